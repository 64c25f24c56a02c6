from unittest import TestCase, mock

from radisync.google_client import (
    GoogleCalendarError,
    GoogleCalendarService,
    GoogleCredentialError,
    GoogleProtocolError,
    GoogleRequestError,
    GoogleSyncTokenExpiredError,
    error_message,
)
from radisync.models import GoogleConfig
from tests.fakes import FakeTokenSource, make_response


def _event(event_id: str, **extra) -> dict:
    payload = {
        "id": event_id,
        "summary": f"Event {event_id}",
        "start": {"dateTime": "2024-01-15T10:00:00Z"},
        "end": {"dateTime": "2024-01-15T11:00:00Z"},
        "iCalUID": f"{event_id}@google.com",
        "status": "confirmed",
    }
    payload.update(extra)
    return payload


def _service(session: mock.Mock, calendar_id: str | None = "cal@group.calendar.google.com", **config) -> GoogleCalendarService:
    return GoogleCalendarService(
        GoogleConfig.from_dict({"page_size": 50, **config}),
        FakeTokenSource(),
        calendar_id=calendar_id,
        session=session,
    )


class FetchChangesTests(TestCase):
    def test_baseline_pull_follows_pages(self) -> None:
        session = mock.Mock()
        session.request.side_effect = [
            make_response(json_data={"items": [_event("a")], "nextPageToken": "page-2"}),
            make_response(json_data={"items": [_event("b")], "nextSyncToken": "sync-1"}),
        ]

        result = _service(session).fetch_changes(None)

        self.assertEqual([event.id for event in result.events], ["a", "b"])
        self.assertEqual(result.sync_token, "sync-1")
        self.assertEqual(session.request.call_count, 2)
        first, second = session.request.call_args_list
        self.assertEqual(first.kwargs["params"], {"maxResults": "50"})
        self.assertEqual(second.kwargs["params"], {"pageToken": "page-2", "maxResults": "50"})
        self.assertEqual(
            first.args,
            ("GET", "https://www.googleapis.com/calendar/v3/calendars/cal%40group.calendar.google.com/events"),
        )
        self.assertEqual(first.kwargs["headers"], {"Authorization": "Bearer mock-token"})

    def test_incremental_pull_sends_sync_token_on_first_page_only(self) -> None:
        session = mock.Mock()
        session.request.side_effect = [
            make_response(json_data={"items": [], "nextPageToken": "page-2"}),
            make_response(json_data={"items": [_event("b")], "nextSyncToken": "sync-2"}),
        ]

        result = _service(session).fetch_changes("sync-1")

        self.assertEqual(result.sync_token, "sync-2")
        first, second = session.request.call_args_list
        self.assertEqual(first.kwargs["params"], {"syncToken": "sync-1"})
        self.assertEqual(second.kwargs["params"], {"pageToken": "page-2"})

    def test_cancelled_items_become_deletions_by_ical_uid(self) -> None:
        session = mock.Mock()
        session.request.return_value = make_response(
            json_data={
                "items": [
                    _event("a"),
                    {"id": "gone", "status": "cancelled", "iCalUID": "gone@google.com"},
                    {"id": "instance_20240115", "status": "cancelled"},
                ],
                "nextSyncToken": "sync-2",
            }
        )

        result = _service(session).fetch_changes("sync-1")

        self.assertEqual([event.id for event in result.events], ["a"])
        self.assertEqual(result.deleted, ["gone@google.com"])

    def test_expired_token_falls_back_to_baseline_once(self) -> None:
        session = mock.Mock()
        session.request.side_effect = [
            make_response(410, json_data={"error": {"message": "Sync token is no longer valid"}}),
            make_response(json_data={"items": [_event("a")], "nextSyncToken": "sync-fresh"}),
        ]
        on_expired = mock.Mock()

        result = _service(session).fetch_changes("stale", on_token_expired=on_expired)

        on_expired.assert_called_once_with()
        self.assertEqual(result.sync_token, "sync-fresh")
        self.assertEqual(session.request.call_count, 2)
        self.assertEqual(session.request.call_args_list[1].kwargs["params"], {"maxResults": "50"})

    def test_repeated_expiry_is_bounded(self) -> None:
        session = mock.Mock()
        session.request.return_value = make_response(410)
        on_expired = mock.Mock()

        with self.assertRaises(GoogleSyncTokenExpiredError):
            _service(session).fetch_changes("stale", on_token_expired=on_expired)
        self.assertEqual(session.request.call_count, 2)
        on_expired.assert_called_once_with()

    def test_baseline_expiry_is_not_retried(self) -> None:
        session = mock.Mock()
        session.request.return_value = make_response(410)

        with self.assertRaises(GoogleSyncTokenExpiredError):
            _service(session).fetch_changes(None)
        self.assertEqual(session.request.call_count, 1)

    def test_other_errors_are_raised_with_status(self) -> None:
        session = mock.Mock()
        session.request.return_value = make_response(403, json_data={"error": {"message": "Rate Limit Exceeded"}})

        with self.assertRaises(GoogleRequestError) as ctx:
            _service(session).fetch_changes("sync-1")
        self.assertEqual(ctx.exception.status_code, 403)
        self.assertEqual(ctx.exception.message, "Rate Limit Exceeded")
        self.assertNotIsInstance(ctx.exception, GoogleSyncTokenExpiredError)

    def test_missing_next_sync_token_is_a_protocol_error(self) -> None:
        session = mock.Mock()
        session.request.return_value = make_response(json_data={"items": [_event("a")]})

        with self.assertRaises(GoogleProtocolError):
            _service(session).fetch_changes(None)

    def test_invalid_json_is_a_protocol_error(self) -> None:
        session = mock.Mock()
        session.request.return_value = make_response(text="<html>oops</html>")

        with self.assertRaises(GoogleProtocolError):
            _service(session).fetch_changes(None)

    def test_missing_calendar_id_raises_before_any_request(self) -> None:
        session = mock.Mock()
        with self.assertRaises(GoogleCalendarError):
            _service(session, calendar_id=None).fetch_changes(None)
        session.request.assert_not_called()

    def test_empty_access_token_raises_credential_error(self) -> None:
        session = mock.Mock()
        service = GoogleCalendarService(GoogleConfig(), FakeTokenSource(""), calendar_id="cal", session=session)
        with self.assertRaises(GoogleCredentialError):
            service.fetch_changes(None)
        session.request.assert_not_called()


class EventRequestTests(TestCase):
    def test_item_helpers_build_expected_requests(self) -> None:
        session = mock.Mock()
        session.request.return_value = make_response(json_data={})
        service = _service(session, calendar_id="primary")
        base = "https://www.googleapis.com/calendar/v3/calendars/primary/events"

        service.find_by_ical_uid("uid-1")
        self.assertEqual(session.request.call_args.args, ("GET", base))
        self.assertEqual(session.request.call_args.kwargs["params"], {"iCalUID": "uid-1"})

        service.insert_event({"summary": "x"})
        self.assertEqual(session.request.call_args.args, ("POST", base))
        self.assertEqual(session.request.call_args.kwargs["json"], {"summary": "x"})

        service.update_event("evt/1", {"summary": "y"})
        self.assertEqual(session.request.call_args.args, ("PUT", f"{base}/evt%2F1"))

        service.delete_event("evt-2")
        self.assertEqual(session.request.call_args.args, ("DELETE", f"{base}/evt-2"))


class EnsureCalendarTests(TestCase):
    def test_reuses_existing_calendar(self) -> None:
        session = mock.Mock()
        session.request.return_value = make_response(
            json_data={"items": [{"id": "other", "summary": "Work"}, {"id": "radicale-id", "summary": "Radicale"}]}
        )

        calendar_id = _service(session, calendar_id=None).ensure_calendar("Radicale")

        self.assertEqual(calendar_id, "radicale-id")
        self.assertEqual(session.request.call_count, 1)

    def test_creates_missing_calendar(self) -> None:
        session = mock.Mock()
        session.request.side_effect = [
            make_response(json_data={"items": [{"id": "other", "summary": "Work"}]}),
            make_response(json_data={"id": "new-id", "summary": "Radicale"}),
        ]

        calendar_id = _service(session, calendar_id=None).ensure_calendar("Radicale")

        self.assertEqual(calendar_id, "new-id")
        create_call = session.request.call_args_list[1]
        self.assertEqual(create_call.args, ("POST", "https://www.googleapis.com/calendar/v3/calendars"))
        self.assertEqual(create_call.kwargs["json"], {"summary": "Radicale"})

    def test_calendar_list_failure_raises(self) -> None:
        session = mock.Mock()
        session.request.return_value = make_response(401, json_data={"error": {"message": "Invalid Credentials"}})

        with self.assertRaises(GoogleRequestError):
            _service(session, calendar_id=None).ensure_calendar("Radicale")


class ErrorMessageTests(TestCase):
    def test_prefers_api_error_message(self) -> None:
        response = make_response(400, json_data={"error": {"message": "Bad Request body"}})
        self.assertEqual(error_message(response), "Bad Request body")

    def test_falls_back_to_body_then_reason(self) -> None:
        self.assertEqual(error_message(make_response(500, "boom")), "boom")
        self.assertEqual(error_message(make_response(502)), "Bad Gateway")
