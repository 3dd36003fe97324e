import pytest

from fakes import (FakeCapture, FakePlayback, FakeReasoning, FakeSpeech,
                   RecordingDispatcher)
from voice_pipeline.pipeline import VoicePipeline


@pytest.fixture
def capture():
    return FakeCapture()


@pytest.fixture
def playback(capture):
    return FakePlayback(capture=capture)


@pytest.fixture
def speech():
    return FakeSpeech()


@pytest.fixture
def reasoning():
    return FakeReasoning()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def make_pipeline(capture, playback, speech, reasoning, dispatcher):
    def factory(**kwargs):
        options = {
            "capture": capture,
            "playback": playback,
            "speech": speech,
            "reasoning": reasoning,
            "dispatcher": dispatcher,
        }
        options.update(kwargs)
        return VoicePipeline(**options)
    return factory


@pytest.fixture
def pipeline(make_pipeline):
    return make_pipeline()
