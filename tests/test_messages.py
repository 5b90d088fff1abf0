import asyncio
import time
from types import SimpleNamespace

from core.messages import FALLBACK_MESSAGE, EmergencyMessageComposer
from models import GeoPoint

LOCATION = GeoPoint(latitude=28.6139, longitude=77.209)


class FakeCompletions:
    def __init__(self, content=None, error=None, delay=0.0):
        self.content = content
        self.error = error
        self.delay = delay
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.delay:
            time.sleep(self.delay)
        if self.error:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def composer_with(completions, timeout=5.0):
    composer = EmergencyMessageComposer(api_key="", timeout=timeout)
    composer.client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return composer


def test_template_without_groq():
    composer = EmergencyMessageComposer(api_key="")

    message = asyncio.run(composer.compose(LOCATION, "+919876543210", 2.345))

    assert not composer.is_available()
    assert message.startswith(FALLBACK_MESSAGE)
    assert "28.613900, 77.209000" in message
    assert "Distance: 2.35 km." in message
    assert "+919876543210" in message


def test_template_omits_missing_phone():
    message = EmergencyMessageComposer.template(LOCATION, None, 1)
    assert "Patient phone" not in message


def test_generated_message_is_used():
    completions = FakeCompletions(content="  Patient at Connaught Place, call +919876543210  ")
    composer = composer_with(completions)

    message = asyncio.run(composer.compose(LOCATION, "+919876543210", 1.2))

    assert message == "Patient at Connaught Place, call +919876543210"
    prompt = completions.calls[0]["messages"][1]["content"]
    assert "28.6139, 77.209" in prompt
    assert "1.20 km" in prompt


def test_generation_error_falls_back_to_template():
    composer = composer_with(FakeCompletions(error=RuntimeError("rate limited")))

    message = asyncio.run(composer.compose(LOCATION, None, 1.0))

    assert message.startswith(FALLBACK_MESSAGE)


def test_empty_generation_falls_back_to_template():
    composer = composer_with(FakeCompletions(content=""))

    assert asyncio.run(composer.compose(LOCATION, None, 1.0)).startswith(FALLBACK_MESSAGE)


def test_slow_generation_falls_back_to_template():
    composer = composer_with(FakeCompletions(content="late", delay=0.3), timeout=0.05)

    assert asyncio.run(composer.compose(LOCATION, None, 1.0)).startswith(FALLBACK_MESSAGE)
