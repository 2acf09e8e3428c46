"""Shared fixtures for screenlog tests."""

from datetime import datetime, timedelta

import pytest
from PIL import Image, ImageDraw

from screenlog.storage import ActivityStorage, SummaryRecord, format_timestamp


class FakeClock:
    """Settable clock for code that takes a ``clock`` callable."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeResponse:
    """Stand-in for requests.Response."""

    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else str(payload)

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 10, 17, 9, 0, 0))


@pytest.fixture
def storage(tmp_path, clock):
    return ActivityStorage(tmp_path / "data", clock=clock)


def make_record(moment: datetime, summary: str = "Editing storage.py", **kwargs) -> SummaryRecord:
    return SummaryRecord(timestamp=format_timestamp(moment), summary=summary, **kwargs)


def make_image(pattern: str = "left", size=(320, 200)) -> Image.Image:
    """Synthetic screen: half white, half black, split per ``pattern``."""
    img = Image.new("RGB", size, "black")
    draw = ImageDraw.Draw(img)
    w, h = size
    boxes = {
        "left": (0, 0, w // 2, h),
        "right": (w // 2, 0, w, h),
        "top": (0, 0, w, h // 2),
        "bottom": (0, h // 2, w, h),
    }
    draw.rectangle(boxes[pattern], fill="white")
    return img
