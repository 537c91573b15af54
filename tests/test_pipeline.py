"""Tests for the run orchestrator."""
import logging
import tempfile
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from bskyfeed.database import StateStore
from bskyfeed.dedup import GuidFallback
from bskyfeed.errors import CompressorError, ParseError, PersistenceError, PublishError
from bskyfeed.models import Enclosure, Feed, FeedItem, NormalizedMedia
from bskyfeed.persistence import DatabasePersister
from bskyfeed.pipeline import RunState, run_pipeline


class FolderPersister(DatabasePersister):
    """Persists the state file into a directory, standing in for releases."""

    def __init__(self, folder: Path):
        self.folder = folder
        self.persist_calls = 0

    def restore(self, path: Path) -> None:
        saved = self.folder / path.name
        if saved.exists():
            path.write_bytes(saved.read_bytes())

    def persist(self, path: Path) -> None:
        self.persist_calls += 1
        (self.folder / path.name).write_bytes(path.read_bytes())

    def saved_guids(self, name="database.db") -> set[str]:
        with StateStore(self.folder / name) as store:
            return {row["guid"] for row in store.execute("SELECT guid FROM entries").fetchall()}


def _item(guid, enclosure=None):
    return FeedItem(
        guid=guid,
        title=f"Item {guid}",
        link=f"https://example.com/{guid}",
        description="",
        enclosure=Enclosure(url=enclosure) if enclosure else None,
    )


def _fetcher(*items):
    fetcher = MagicMock()
    fetcher.fetch.return_value = Feed(title="Example", items=list(items))
    return fetcher


@pytest.fixture
def workspace():
    """(config, persister) with a scratch run directory and remote folder."""
    with tempfile.TemporaryDirectory() as tmpdir:
        run_dir = Path(tmpdir) / "run"
        remote = Path(tmpdir) / "remote"
        run_dir.mkdir()
        remote.mkdir()
        config = {
            "feed": {"url": "https://example.com/feed.xml", "guid_fallback": GuidFallback.SKIP},
            "database": {"path": run_dir / "database.db"},
        }
        yield config, FolderPersister(remote)


def test_publishes_new_items_in_order_and_persists(workspace):
    config, persister = workspace
    publisher = MagicMock()

    result = run_pipeline(config, persister, _fetcher(_item("1"), _item(None), _item("2")), MagicMock(), publisher)

    assert result.state is RunState.DONE
    assert result.exit_code == 0
    assert result.published == 2
    publisher.login.assert_called_once()
    assert [c[0][0].guid for c in publisher.publish.call_args_list] == ["1", "2"]
    assert persister.saved_guids() == {"1", "2"}


def test_partial_run_persists_recorded_items_and_fails(workspace):
    """Item 2 of 3 fails: 0 and 1 are persisted, 2 is not, run fails."""
    config, persister = workspace
    publisher = MagicMock()
    publisher.publish.side_effect = [None, None, PublishError("rate limited"), None]

    items = [_item("0"), _item("1"), _item("2"), _item("3")]
    result = run_pipeline(config, persister, _fetcher(*items), MagicMock(), publisher)

    assert result.state is RunState.FAILED
    assert result.exit_code == 1
    assert result.published == 2
    assert publisher.publish.call_count == 3
    assert persister.persist_calls == 1
    assert persister.saved_guids() == {"0", "1"}
    assert result.failures[0][0].guid == "2"


def test_next_run_does_not_republish(workspace):
    """Guids recorded in run N are excluded in run N+1."""
    config, persister = workspace
    items = [_item("a"), _item("b")]

    first = MagicMock()
    first.publish.side_effect = [None, PublishError("down")]
    run_pipeline(config, persister, _fetcher(*items), MagicMock(), first)

    # fresh local disk, like a new CI runner
    Path(config["database"]["path"]).unlink()

    second = MagicMock()
    result = run_pipeline(config, persister, _fetcher(*items), MagicMock(), second)

    assert result.state is RunState.DONE
    assert [c[0][0].guid for c in second.publish.call_args_list] == ["b"]
    assert persister.saved_guids() == {"a", "b"}


def test_no_new_items_skips_login_and_still_persists(workspace):
    config, persister = workspace
    with StateStore(config["database"]["path"]) as store:
        store.record("1")
    persister.persist(config["database"]["path"])
    persister.persist_calls = 0
    publisher = MagicMock()

    result = run_pipeline(config, persister, _fetcher(_item("1")), MagicMock(), publisher)

    assert result.state is RunState.DONE
    assert result.new == 0
    publisher.login.assert_not_called()
    assert persister.persist_calls == 1


def test_fetch_failure_aborts_without_persisting(workspace):
    config, persister = workspace
    fetcher = MagicMock()
    fetcher.fetch.side_effect = ParseError("Malformed feed")
    publisher = MagicMock()

    result = run_pipeline(config, persister, fetcher, MagicMock(), publisher)

    assert result.state is RunState.FAILED
    assert result.exit_code == 1
    assert "Malformed" in result.error
    publisher.publish.assert_not_called()
    assert persister.persist_calls == 0


def test_restore_failure_is_absorbed(workspace):
    config, _ = workspace
    persister = MagicMock()
    persister.restore.side_effect = RuntimeError("remote store exploded")

    result = run_pipeline(config, persister, _fetcher(_item("1")), MagicMock(), MagicMock())

    assert result.state is RunState.DONE
    persister.persist.assert_called_once_with(Path(config["database"]["path"]))


def test_corrupt_restored_state_starts_fresh(workspace):
    config, _ = workspace
    persister = MagicMock()
    persister.restore.side_effect = lambda path: path.write_bytes(b"definitely not sqlite" * 100)

    result = run_pipeline(config, persister, _fetcher(_item("1")), MagicMock(), MagicMock())

    assert result.state is RunState.DONE
    with StateStore(config["database"]["path"]) as store:
        assert store.contains("1")


def test_unopenable_state_store_fails_run(workspace, caplog):
    config, persister = workspace
    blocker = Path(config["database"]["path"]).parent / "not-a-dir"
    blocker.write_text("x")
    config["database"]["path"] = blocker / "database.db"
    publisher = MagicMock()

    with caplog.at_level(logging.ERROR, logger="bskyfeed.pipeline"):
        result = run_pipeline(config, persister, _fetcher(_item("1")), MagicMock(), publisher)

    assert result.state is RunState.FAILED
    assert result.exit_code == 1
    assert result.error
    assert "[RESTORE]" in caplog.text
    publisher.publish.assert_not_called()
    assert persister.persist_calls == 0


def test_persist_failure_fails_run(workspace, caplog):
    config, _ = workspace
    persister = MagicMock()
    persister.persist.side_effect = PersistenceError("upload rejected")

    with caplog.at_level(logging.ERROR, logger="bskyfeed.pipeline"):
        result = run_pipeline(config, persister, _fetcher(_item("1")), MagicMock(), MagicMock())

    assert result.state is RunState.FAILED
    assert result.exit_code == 1
    assert "upload rejected" in result.error
    assert "[PERSIST]" in caplog.text


def test_store_closed_before_persist(workspace):
    """The database handle is released before the file is handed over."""
    config, _ = workspace
    seen = {}

    class CheckingPersister(DatabasePersister):
        def restore(self, path):
            pass

        def persist(self, path):
            with StateStore(path) as store:
                seen["guids"] = store.contains_any({"1"})

    run_pipeline(config, CheckingPersister(), _fetcher(_item("1")), MagicMock(), MagicMock())

    assert seen["guids"] == {"1"}


def test_enclosure_is_normalized_and_passed_to_publisher(workspace):
    config, persister = workspace
    media = NormalizedMedia(data=b"img", mime_type="image/jpeg")
    normalizer = MagicMock()
    normalizer.normalize.return_value = media
    publisher = MagicMock()

    run_pipeline(
        config, persister,
        _fetcher(_item("1", enclosure="https://example.com/1.jpg"), _item("2")),
        normalizer, publisher,
    )

    normalizer.normalize.assert_called_once_with("https://example.com/1.jpg")
    assert publisher.publish.call_args_list[0][0][1] is media
    assert publisher.publish.call_args_list[1][0][1] is None


def test_media_failure_stops_loop_before_publish(workspace):
    config, persister = workspace
    normalizer = MagicMock()
    normalizer.normalize.side_effect = CompressorError("Exited with code 2", exit_code=2)
    publisher = MagicMock()

    result = run_pipeline(
        config, persister,
        _fetcher(_item("1"), _item("2", enclosure="https://example.com/2.jpg"), _item("3")),
        normalizer, publisher,
    )

    assert result.state is RunState.FAILED
    assert publisher.publish.call_count == 1
    assert persister.saved_guids() == {"1"}


def test_login_failure_publishes_nothing_but_persists(workspace):
    config, persister = workspace
    publisher = MagicMock()
    publisher.login.side_effect = PublishError("bad password")

    result = run_pipeline(config, persister, _fetcher(_item("1")), MagicMock(), publisher)

    assert result.state is RunState.FAILED
    publisher.publish.assert_not_called()
    assert persister.persist_calls == 1
    assert persister.saved_guids() == set()


def test_link_fallback_records_link(workspace):
    config, persister = workspace
    config["feed"]["guid_fallback"] = GuidFallback.LINK

    result = run_pipeline(config, persister, _fetcher(_item(None)), MagicMock(), MagicMock())

    assert result.published == 1
    assert persister.saved_guids() == {"https://example.com/None"}
