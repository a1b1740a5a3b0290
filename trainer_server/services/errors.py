"""
Error taxonomy shared by the provider adapters and the turn coordinator.

Adapters raise these at their boundary; the coordinator turns them into its
``error`` field instead of letting them reach the websocket layer.
"""


class TrainerError(Exception):
    """Base class for every error the coordinator knows how to surface."""


class AcquisitionError(TrainerError):
    """The capture device (or the transcription backend behind it) is unavailable."""


class StreamError(TrainerError):
    """The live transcription connection broke mid-utterance."""


class GenerationError(TrainerError):
    """Reply generation failed (transport, provider or empty reply)."""


class PlaybackError(TrainerError):
    """Speech synthesis/playback failed on every available path."""
