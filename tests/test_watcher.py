from watchdog.events import (
    DirModifiedEvent,
    FileCreatedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from proxysync.watcher import ConfigFileHandler, ConfigFileWatcher


class FakeObserver:
    def __init__(self):
        self.scheduled = []
        self.started = False
        self.stopped = False
        self.joined = False
        self.daemon = False

    def schedule(self, handler, path, recursive=False):
        self.scheduled.append((handler, path, recursive))

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True

    def join(self, timeout=None):
        self.joined = True


def test_handler_only_reacts_to_the_watched_file(tmp_path):
    target = tmp_path / "default.conf"
    hits = []
    handler = ConfigFileHandler(str(target), lambda: hits.append(1))

    handler.dispatch(FileModifiedEvent(str(tmp_path / "other.conf")))
    handler.dispatch(DirModifiedEvent(str(tmp_path)))
    assert hits == []

    handler.dispatch(FileModifiedEvent(str(target)))
    handler.dispatch(FileCreatedEvent(str(target)))
    assert len(hits) == 2


def test_handler_sees_replacement_by_rename(tmp_path):
    target = tmp_path / "default.conf"
    hits = []
    handler = ConfigFileHandler(str(target), lambda: hits.append(1))

    handler.dispatch(FileMovedEvent(str(tmp_path / ".proxysync-x.tmp"), str(target)))
    handler.dispatch(FileMovedEvent(str(target), str(tmp_path / "default.conf.bak")))

    assert len(hits) == 1


def test_watcher_observes_parent_directory(tmp_path):
    target = tmp_path / "conf.d" / "default.conf"
    observer = FakeObserver()
    watcher = ConfigFileWatcher(str(target), lambda: None, observer_factory=lambda: observer)

    watcher.start()
    watcher.start()

    assert watcher.running
    assert observer.started
    assert observer.daemon is True
    assert len(observer.scheduled) == 1
    _, path, recursive = observer.scheduled[0]
    assert path == str(tmp_path / "conf.d")
    assert recursive is False
    assert (tmp_path / "conf.d").is_dir()

    watcher.stop()
    assert observer.stopped and observer.joined
    assert not watcher.running
