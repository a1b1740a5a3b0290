from trainer_server.services.turn_taking import ConversationLog, SessionPhase, Speaker


def test_log_is_ordered_and_role_tagged():
    log = ConversationLog()
    log.append(Speaker.USER, "My room service never came.", timestamp=1.0)
    log.append(Speaker.AGENT, "I'm sorry, let me check.", timestamp=2.0)

    assert len(log) == 2
    assert [t.speaker for t in log] == [Speaker.USER, Speaker.AGENT]
    assert log.as_history() == [
        {"role": "user", "content": "My room service never came."},
        {"role": "assistant", "content": "I'm sorry, let me check."},
    ]
    assert log.to_list()[0] == {"speaker": "user", "text": "My room service never came.", "timestamp": 1.0}


def test_log_clear():
    log = ConversationLog()
    log.append(Speaker.USER, "Hello")
    log.clear()
    assert len(log) == 0
    assert log.as_history() == []


def test_append_stamps_time():
    log = ConversationLog()
    turn = log.append(Speaker.AGENT, "Well?")
    assert turn.timestamp > 0
    assert log[0] is turn


def test_phase_values():
    assert [p.value for p in SessionPhase] == ["idle", "listening", "thinking", "speaking"]
    assert SessionPhase("thinking") is SessionPhase.THINKING
