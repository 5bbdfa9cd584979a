"""Tests for InotifySource against the real kernel facility."""

import sys

import pytest

from inwatchd.exceptions import WatchNotFoundError
from inwatchd.masks import DELETE_SELF, IGNORED, MODIFY

pytestmark = pytest.mark.skipif(not sys.platform.startswith("linux"), reason="inotify is Linux only")


@pytest.fixture
def inotify():
    from inwatchd.source import InotifySource

    source = InotifySource()
    yield source
    source.close()


def read_until(source, wanted, attempts=10):
    events = []
    for _ in range(attempts):
        events.extend(source.read_events(timeout_ms=200))
        if any(event.mask & wanted for event in events):
            break
    return events


class TestInotifySource:
    """Tests for InotifySource."""

    def test_modify_delivered_with_path(self, inotify, tmp_path):
        target = tmp_path / "list.txt"
        target.write_text("v1")
        seen = []

        handle = inotify.register(str(target), MODIFY | DELETE_SELF, seen.append)
        with open(target, "a") as f:
            f.write("v2")
        events = read_until(inotify, MODIFY)

        event = next(e for e in events if e.mask & MODIFY)
        assert event.wd == handle.wd
        assert event.path == str(target)
        inotify.callback_for(handle.wd)(event)
        assert seen == [event]

    def test_cancel_produces_ignored(self, inotify, tmp_path):
        target = tmp_path / "list.txt"
        target.write_text("v1")
        handle = inotify.register(str(target), MODIFY, lambda event: None)

        assert inotify.cancel(handle)
        events = read_until(inotify, IGNORED)

        assert any(e.wd == handle.wd and e.is_ignored for e in events)
        assert inotify.callback_for(handle.wd) is None

    def test_cancel_after_delete(self, inotify, tmp_path):
        target = tmp_path / "list.txt"
        target.write_text("v1")
        handle = inotify.register(str(target), MODIFY | DELETE_SELF, lambda event: None)

        target.unlink()
        read_until(inotify, IGNORED)

        assert inotify.cancel(handle) is False

    def test_missing_path(self, inotify, tmp_path):
        with pytest.raises(WatchNotFoundError):
            inotify.register(str(tmp_path / "absent"), MODIFY, lambda event: None)

    def test_fileno(self, inotify):
        assert inotify.fileno() >= 0
