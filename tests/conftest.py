import pytest

from mugpack import CancelToken, MugshotItem


class FakeCodec:
    """Codec double: records calls and returns synthetic images as tuples."""

    def __init__(self):
        self.fail_on = set()
        self.loaded = []
        self.resized = []
        self.on_load = None

    def identify(self, source):
        return (0, 0, 0.0, 0.0)

    def load(self, source):
        self.loaded.append(source)
        if self.on_load is not None:
            self.on_load()
        if source in self.fail_on:
            raise OSError(f"cannot decode {source}")
        return ("img", source)

    def crop_resize(self, img, w, h):
        self.resized.append((img, w, h))
        return ("resized", w, h)

    def encode(self, img):
        _, w, h = img
        return f"png:{w}x{h}".encode()


class CountdownToken(CancelToken):
    """Cancels itself once ``checks`` cancellation checks have passed."""

    def __init__(self, checks):
        super().__init__()
        self.remaining = checks
        self.seen = 0

    def raise_if_cancelled(self):
        self.seen += 1
        if self.remaining <= 0:
            self.cancel()
        self.remaining -= 1
        super().raise_if_cancelled()


@pytest.fixture
def fake_codec():
    return FakeCodec()


@pytest.fixture
def countdown():
    return CountdownToken


@pytest.fixture
def make_item():
    def _make(pw, ph, visible=True, path=None):
        item = MugshotItem(path=path, visible=visible)
        item.set_dimensions(pw, ph, float(pw), float(ph))
        return item

    return _make
