"""Tests for PushAdapter: create/update/delete mirroring and failure reporting."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from timeblock_sync.models import BlockEventData, PushAction, SyncDirection

pytestmark = pytest.mark.unit


def _block(title: str = "Deep work", hour: int = 9, **extra) -> BlockEventData:
    return BlockEventData(
        title=title,
        start_at=datetime(2026, 3, 2, hour, tzinfo=UTC),
        end_at=datetime(2026, 3, 2, hour + 1, tzinfo=UTC),
        **extra,
    )


class TestCreate:
    async def test_create_inserts_and_maps(self, services, connected_user, google, mappings):
        result = await services.pusher.push_block(
            "user-1", "block-1", PushAction.CREATE, _block(description="focus")
        )

        assert result is not None
        assert result.action is PushAction.CREATE
        remote = google.events["work-cal"][result.google_event_id]
        assert remote["summary"] == "Deep work"
        assert remote["description"] == "focus"
        assert remote["start"] == {"dateTime": "2026-03-02T09:00:00+00:00", "timeZone": "UTC"}
        mapping = await mappings.get_by_block("user-1", "block-1")
        assert mapping.google_event_id == result.google_event_id
        assert mapping.google_etag == result.etag
        assert mapping.sync_direction is SyncDirection.APP_TO_GOOGLE

    async def test_create_accepts_plain_dict_and_string_action(
        self, services, connected_user, google
    ):
        result = await services.pusher.push_block(
            "user-1",
            "block-1",
            "create",
            {
                "title": "",
                "start_at": "2026-03-02T09:00:00Z",
                "end_at": "2026-03-02T10:00:00Z",
            },
        )
        assert google.events["work-cal"][result.google_event_id]["summary"] == "Untitled Block"

    async def test_pushed_event_is_not_pulled_back_as_new(
        self, services, connected_user, google
    ):
        await services.poller.sync("user-1")
        await services.pusher.push_block("user-1", "block-1", PushAction.CREATE, _block())

        result = await services.poller.sync("user-1")

        assert result.new == []
        assert result.updated == []


class TestUpdate:
    async def test_update_puts_and_refreshes_etag(self, services, connected_user, google, mappings):
        created = await services.pusher.push_block(
            "user-1", "block-1", PushAction.CREATE, _block()
        )

        updated = await services.pusher.push_block(
            "user-1", "block-1", PushAction.UPDATE, _block(title="Deep work (long)", hour=13)
        )

        assert updated.google_event_id == created.google_event_id
        assert updated.etag != created.etag
        assert google.calendar_requests("PUT", created.google_event_id)
        remote = google.events["work-cal"][created.google_event_id]
        assert remote["summary"] == "Deep work (long)"
        assert (await mappings.get_by_block("user-1", "block-1")).google_etag == updated.etag

    async def test_update_without_mapping_creates(self, services, connected_user, google, mappings):
        result = await services.pusher.push_block(
            "user-1", "block-9", PushAction.UPDATE, _block()
        )
        assert result.action is PushAction.CREATE
        assert await mappings.get_by_block("user-1", "block-9") is not None
        assert google.calendar_requests("PUT", "") == []

    async def test_update_of_remotely_deleted_event_recreates_it(
        self, services, connected_user, google, mappings
    ):
        created = await services.pusher.push_block(
            "user-1", "block-1", PushAction.CREATE, _block()
        )
        google.cancel_event(created.google_event_id)

        result = await services.pusher.push_block(
            "user-1", "block-1", PushAction.UPDATE, _block(title="Still here")
        )

        assert result.action is PushAction.CREATE
        assert result.google_event_id != created.google_event_id
        mapping = await mappings.get_by_block("user-1", "block-1")
        assert mapping.google_event_id == result.google_event_id
        assert len(mappings.rows) == 1


class TestDelete:
    async def test_round_trip_leaves_no_mapping(self, services, connected_user, google, mappings):
        created = await services.pusher.push_block(
            "user-1", "block-1", PushAction.CREATE, _block()
        )
        await services.pusher.push_block("user-1", "block-1", PushAction.UPDATE, _block(hour=10))

        result = await services.pusher.push_block("user-1", "block-1", PushAction.DELETE)

        assert result.action is PushAction.DELETE
        assert result.google_event_id == created.google_event_id
        assert google.events["work-cal"][created.google_event_id]["status"] == "cancelled"
        assert mappings.rows == {}

    async def test_delete_without_mapping_is_a_no_op(self, services, connected_user, google):
        result = await services.pusher.push_block("user-1", "block-1", PushAction.DELETE)
        assert result.action is PushAction.DELETE
        assert result.google_event_id is None
        assert google.requests == []

    async def test_delete_of_already_deleted_event_unmaps(
        self, services, connected_user, google, mappings, push_failures
    ):
        created = await services.pusher.push_block(
            "user-1", "block-1", PushAction.CREATE, _block()
        )
        google.cancel_event(created.google_event_id)

        result = await services.pusher.push_block("user-1", "block-1", PushAction.DELETE)

        assert result is not None
        assert mappings.rows == {}
        assert push_failures == []


class TestSkipsAndFailures:
    async def test_not_connected_is_skipped(self, services, google, push_failures):
        assert await services.pusher.push_block("user-1", "b", PushAction.CREATE, _block()) is None
        assert google.requests == []
        assert push_failures == []

    async def test_no_calendar_selected_is_skipped(
        self, services, connection_factory, google, push_failures
    ):
        connection_factory(calendar_id=None)
        assert await services.pusher.push_block("user-1", "b", PushAction.CREATE, _block()) is None
        assert google.requests == []
        assert push_failures == []

    async def test_provider_failure_is_reported_not_raised(
        self, services, connected_user, google, mappings, push_failures
    ):
        google.script(
            "POST", "/events", 500, json_body={"error": {"code": 500, "message": "Backend Error"}}
        )

        result = await services.pusher.push_block(
            "user-1", "block-1", PushAction.CREATE, _block()
        )

        assert result is None
        assert mappings.rows == {}
        assert len(push_failures) == 1
        user_id, error = push_failures[0]
        assert user_id == "user-1"
        assert error.block_id == "block-1"
        assert error.action == "create"
        assert "Backend Error" in error.message

    async def test_missing_event_data_is_reported(self, services, connected_user, push_failures):
        assert await services.pusher.push_block("user-1", "block-1", PushAction.CREATE) is None
        assert "event data is required" in push_failures[0][1].message

    async def test_unknown_action_is_reported(self, services, connected_user, push_failures):
        assert await services.pusher.push_block("user-1", "block-1", "archive", _block()) is None
        assert push_failures[0][1].action == "archive"

    async def test_invalid_event_data_is_reported(self, services, connected_user, push_failures):
        result = await services.pusher.push_block(
            "user-1",
            "block-1",
            PushAction.CREATE,
            {"start_at": "2026-03-02T10:00:00Z", "end_at": "2026-03-02T09:00:00Z"},
        )
        assert result is None
        assert len(push_failures) == 1

    async def test_failing_notifier_is_contained(self, connected_user, google, services):
        async def broken_notifier(user_id, error):
            raise RuntimeError("notifier down")

        services.pusher._notifier = broken_notifier
        google.script("POST", "/events", 500)

        assert (
            await services.pusher.push_block("user-1", "block-1", PushAction.CREATE, _block())
            is None
        )
