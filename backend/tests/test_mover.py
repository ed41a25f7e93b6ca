"""
Tests for moving and deleting messages on the server

Tests cover:
- Source verification before any change
- Cache invalidation scoped to the touched folders
- Learning the new UID (COPYUID or search)
- Failure reporting
"""
import pytest

from mailkan.exceptions import ImapProtocolError, MoveFailedError
from mailkan.models.events import MessageDeleted, MessageMoved
from mailkan.models.message import MessageMetadata
from mailkan.services.mover import NOT_FOUND, MoveOrchestrator, MoveState
from conftest import make_message, make_raw

ALL_FOLDERS = [
    ("INBOX", "posteingang"),
    ("In_Bearbeitung", "in-bearbeitung"),
    ("Warte_auf_Antwort", "warte-auf-antwort"),
]


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def mover(connector, cache, events, sleeps):
    async def record_sleep(seconds):
        sleeps.append(seconds)

    return MoveOrchestrator(connector, cache, events, settle_delay=1.5, sleep=record_sleep)


@pytest.fixture
def warm_cache(cache):
    for folder, column in ALL_FOLDERS:
        cache.put(folder, column, [make_message(1, column, folder)])
    return cache


def metadata(subject="Hello", sender="alice@example.com"):
    return MessageMetadata(subject=subject, sender=sender)


class TestMoveVerification:
    async def test_missing_uid_is_not_moved(self, mover, connector, warm_cache):
        outcome = await mover.move(999, "INBOX", "In_Bearbeitung", metadata())

        assert not outcome.success
        assert outcome.reason == NOT_FOUND
        assert outcome.state == MoveState.FAILED
        assert connector.moves == []
        assert len(warm_cache) == 3

    async def test_missing_uid_publishes_nothing(self, mover, published):
        await mover.move(999, "INBOX", "In_Bearbeitung")

        assert published == []


class TestMoveSuccess:
    """Tests for a completed move"""

    async def test_only_touched_folders_invalidated(self, mover, connector, warm_cache):
        uid = connector.add("INBOX", make_raw())

        outcome = await mover.move(uid, "INBOX", "In_Bearbeitung", metadata())

        assert outcome.success
        assert connector.moves == [(uid, "INBOX", "In_Bearbeitung")]
        assert warm_cache.get("INBOX", "posteingang") is None
        assert warm_cache.get("In_Bearbeitung", "in-bearbeitung") is None
        assert warm_cache.get("Warte_auf_Antwort", "warte-auf-antwort") is not None

    async def test_missing_destination_created_before_move(self, mover, connector):
        del connector.folders["Warte_auf_Antwort"]
        uid = connector.add("INBOX", make_raw())

        outcome = await mover.move(uid, "INBOX", "Warte_auf_Antwort", metadata())

        assert outcome.success
        assert connector.created == ["Warte_auf_Antwort"]
        assert list(connector.folders["Warte_auf_Antwort"]) == [outcome.new_uid]

    async def test_existing_destination_not_recreated(self, mover, connector):
        uid = connector.add("INBOX", make_raw())

        await mover.move(uid, "INBOX", "In_Bearbeitung")

        assert connector.created == []

    async def test_missing_uid_creates_no_folder(self, mover, connector):
        del connector.folders["Warte_auf_Antwort"]

        outcome = await mover.move(999, "INBOX", "Warte_auf_Antwort")

        assert not outcome.success
        assert connector.created == []

    async def test_source_selected_read_write(self, mover, connector):
        uid = connector.add("INBOX", make_raw())

        await mover.move(uid, "INBOX", "In_Bearbeitung")

        assert connector.opened[0] == ("INBOX", False)

    async def test_copyuid_used_without_search(self, mover, connector, sleeps):
        uid = connector.add("INBOX", make_raw())

        outcome = await mover.move(uid, "INBOX", "In_Bearbeitung", metadata())

        assert outcome.new_uid == 500
        assert outcome.history == [
            MoveState.REQUESTED,
            MoveState.SOURCE_VERIFIED,
            MoveState.MOVED,
            MoveState.DESTINATION_RESOLVED,
            MoveState.COMPLETED,
        ]
        assert connector.header_fetches == []
        assert sleeps == []

    async def test_event_published(self, mover, connector, published):
        uid = connector.add("INBOX", make_raw())

        await mover.move(uid, "INBOX", "Warte_auf_Antwort", metadata())

        assert len(published) == 1
        event = published[0]
        assert isinstance(event, MessageMoved)
        assert (event.uid, event.new_uid, event.from_folder, event.to_folder) == (
            uid, 500, "INBOX", "Warte_auf_Antwort",
        )
        assert event.metadata.subject == "Hello"


class TestUidResolution:
    """Tests for finding the moved message when the server reports no COPYUID"""

    async def test_found_by_subject_and_sender(self, mover, connector, sleeps):
        connector.copyuid = False
        connector.add("In_Bearbeitung", make_raw(subject="Something else"))
        uid = connector.add("INBOX", make_raw(subject="Hello", sender="Alice <alice@example.com>"))

        outcome = await mover.move(uid, "INBOX", "In_Bearbeitung", metadata(subject="hello "))

        assert outcome.success
        assert outcome.new_uid == 501
        assert sleeps == [1.5]
        assert MoveState.DESTINATION_RESOLVED in outcome.history

    async def test_ambiguous_match_keeps_old_uid(self, mover, connector):
        connector.copyuid = False
        connector.add("In_Bearbeitung", make_raw(subject="Hello"))
        uid = connector.add("INBOX", make_raw(subject="Hello"))

        outcome = await mover.move(uid, "INBOX", "In_Bearbeitung", metadata())

        assert outcome.success
        assert outcome.new_uid is None
        assert MoveState.DESTINATION_RESOLVED not in outcome.history

    async def test_no_match(self, mover, connector):
        connector.copyuid = False
        uid = connector.add("INBOX", make_raw(subject="Hello"))

        outcome = await mover.move(uid, "INBOX", "In_Bearbeitung", metadata(subject="Different"))

        assert outcome.success
        assert outcome.new_uid is None

    async def test_skipped_without_subject(self, mover, connector, sleeps):
        connector.copyuid = False
        uid = connector.add("INBOX", make_raw())

        outcome = await mover.move(uid, "INBOX", "In_Bearbeitung")

        assert outcome.new_uid is None
        assert sleeps == []
        assert connector.header_fetches == []

    async def test_disabled(self, connector, cache, events, sleeps):
        connector.copyuid = False
        mover = MoveOrchestrator(connector, cache, events, resolve_new_uid=False)
        uid = connector.add("INBOX", make_raw())

        outcome = await mover.move(uid, "INBOX", "In_Bearbeitung", metadata())

        assert outcome.new_uid is None
        assert connector.header_fetches == []

    async def test_lookup_failure_does_not_fail_move(self, mover, connector, connection_error):
        connector.copyuid = False
        uid = connector.add("INBOX", make_raw())
        connector.fail["In_Bearbeitung"] = connection_error

        outcome = await mover.move(uid, "INBOX", "In_Bearbeitung", metadata())

        assert outcome.success
        assert outcome.new_uid is None


class TestMoveFailure:
    async def test_connection_failure_raises(self, mover, connector, warm_cache, connection_error):
        connector.fail["INBOX"] = connection_error

        with pytest.raises(MoveFailedError) as exc_info:
            await mover.move(100, "INBOX", "In_Bearbeitung")

        assert exc_info.value.context() == {"uid": 100, "source": "INBOX", "destination": "In_Bearbeitung"}
        assert exc_info.value.user_message == connection_error.user_message
        assert len(warm_cache) == 3

    async def test_command_failure_raises(self, mover, connector, published):
        uid = connector.add("INBOX", make_raw())
        connector.move_error = ImapProtocolError("MOVE returned NO", command="MOVE")

        with pytest.raises(MoveFailedError):
            await mover.move(uid, "INBOX", "In_Bearbeitung")
        assert published == []


class TestDelete:
    async def test_delete(self, mover, connector, warm_cache, published):
        uid = connector.add("Warte_auf_Antwort", make_raw())

        outcome = await mover.delete(uid, "Warte_auf_Antwort", metadata())

        assert outcome.success
        assert connector.deletes == [(uid, "Warte_auf_Antwort")]
        assert warm_cache.get("Warte_auf_Antwort", "warte-auf-antwort") is None
        assert warm_cache.get("INBOX", "posteingang") is not None
        assert isinstance(published[0], MessageDeleted)

    async def test_delete_missing(self, mover, connector, warm_cache):
        outcome = await mover.delete(4711, "INBOX")

        assert not outcome.success
        assert outcome.reason == NOT_FOUND
        assert connector.deletes == []
        assert len(warm_cache) == 3

    async def test_delete_failure(self, mover, connector, connection_error):
        connector.fail["INBOX"] = connection_error

        with pytest.raises(MoveFailedError) as exc_info:
            await mover.delete(100, "INBOX")

        assert exc_info.value.user_message == "Löschen auf dem Mailserver fehlgeschlagen"
