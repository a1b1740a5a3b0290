from trainer_server.services.sentence_splitter import group_for_speech, split_on_sentences


def test_split_on_sentences():
    assert split_on_sentences("Fine. Whatever! Are you serious?  Yes") == [
        "Fine.",
        "Whatever!",
        "Are you serious?",
        "Yes",
    ]
    assert split_on_sentences("") == []
    assert split_on_sentences(None) == []


def test_short_sentences_are_grouped():
    assert group_for_speech("Fine. Whatever. Just fix it.", max_chars=180) == ["Fine. Whatever. Just fix it."]


def test_groups_respect_max_chars():
    text = "This is the first sentence. This is the second one. And a third."
    groups = group_for_speech(text, max_chars=30)
    assert groups == ["This is the first sentence.", "This is the second one.", "And a third."]


def test_oversized_sentence_kept_whole():
    long_sentence = "I have been waiting " + "for a very long time " * 10 + "today."
    assert group_for_speech(long_sentence, max_chars=40) == [long_sentence]
