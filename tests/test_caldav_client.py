from unittest import TestCase, mock

import requests

from radisync.caldav_client import (
    CalDAVError,
    CalDAVProtocolError,
    CalDAVRequestError,
    CalDAVService,
    build_sync_request,
    parse_multistatus,
    uid_from_href,
)
from radisync.models import CalDAVConfig
from tests.fakes import make_response


def _calendar_data(uid: str, summary: str) -> str:
    return (
        "BEGIN:VCALENDAR\r\nVERSION:2.0\r\nBEGIN:VEVENT\r\n"
        f"UID:{uid}\r\nSUMMARY:{summary}\r\n"
        "DTSTART:20240115T100000Z\r\nDTEND:20240115T110000Z\r\n"
        "END:VEVENT\r\nEND:VCALENDAR\r\n"
    )


MULTISTATUS = f"""<?xml version="1.0" encoding="utf-8"?>
<d:multistatus xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:response>
    <d:href>/user/calendar/event-new-1.ics</d:href>
    <d:propstat>
      <d:prop>
        <d:getetag>"etag-1"</d:getetag>
        <c:calendar-data>{_calendar_data("event-new-1", "New Team Meeting")}</c:calendar-data>
      </d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
  <d:response>
    <d:href>/user/calendar/event-deleted-1.ics</d:href>
    <d:status>HTTP/1.1 404 Not Found</d:status>
  </d:response>
  <d:response>
    <d:href>/user/calendar/event%40gone.ics</d:href>
    <d:propstat>
      <d:prop><d:getetag/></d:prop>
      <d:status>HTTP/1.1 404 Not Found</d:status>
    </d:propstat>
  </d:response>
  <d:sync-token>http://radicale.org/ns/sync/token-2</d:sync-token>
</d:multistatus>
"""


def _service(session: mock.Mock) -> CalDAVService:
    config = CalDAVConfig.from_dict({"base_url": "https://dav.example.com/user/calendar", "username": "u"})
    return CalDAVService(config, session=session)


class SyncRequestTests(TestCase):
    def test_initial_request_has_empty_token(self) -> None:
        body = build_sync_request(None)
        self.assertIn("<d:sync-token/>", body)
        self.assertIn("<d:sync-level>1</d:sync-level>", body)
        self.assertIn("<c:calendar-data/>", body)

    def test_incremental_request_escapes_token(self) -> None:
        body = build_sync_request("token-1&more")
        self.assertIn("<d:sync-token>token-1&amp;more</d:sync-token>", body)

    def test_uid_from_href(self) -> None:
        self.assertEqual(uid_from_href("/user/calendar/abc.ics"), "abc")
        self.assertEqual(uid_from_href("https://dav.example.com/cal/a%40b.ics"), "a@b")
        self.assertEqual(uid_from_href("/user/calendar/"), "")


class ParseMultistatusTests(TestCase):
    def test_splits_events_deletions_and_token(self) -> None:
        result = parse_multistatus(MULTISTATUS)
        self.assertEqual([event.uid for event in result.events], ["event-new-1"])
        self.assertEqual(result.events[0].summary, "New Team Meeting")
        self.assertEqual(result.deleted, ["event-deleted-1", "event@gone"])
        self.assertEqual(result.sync_token, "http://radicale.org/ns/sync/token-2")

    def test_empty_change_set(self) -> None:
        result = parse_multistatus(
            '<d:multistatus xmlns:d="DAV:"><d:sync-token>t-3</d:sync-token></d:multistatus>'
        )
        self.assertEqual(result.events, [])
        self.assertEqual(result.deleted, [])
        self.assertEqual(result.sync_token, "t-3")

    def test_missing_sync_token_raises(self) -> None:
        with self.assertRaises(CalDAVProtocolError):
            parse_multistatus('<d:multistatus xmlns:d="DAV:"></d:multistatus>')

    def test_malformed_xml_raises(self) -> None:
        with self.assertRaises(CalDAVProtocolError):
            parse_multistatus("<d:multistatus")


class CalDAVServiceTests(TestCase):
    def test_requires_base_url(self) -> None:
        with self.assertRaises(CalDAVError):
            CalDAVService(CalDAVConfig())

    def test_fetch_changes_sends_report_with_token(self) -> None:
        session = mock.Mock()
        session.request.return_value = make_response(207, MULTISTATUS)

        result = _service(session).fetch_changes("token-1")

        self.assertEqual(result.sync_token, "http://radicale.org/ns/sync/token-2")
        method, url = session.request.call_args.args
        kwargs = session.request.call_args.kwargs
        self.assertEqual(method, "REPORT")
        self.assertEqual(url, "https://dav.example.com/user/calendar/")
        self.assertEqual(kwargs["headers"]["Depth"], "1")
        self.assertIn(b"<d:sync-token>token-1</d:sync-token>", kwargs["data"])
        self.assertEqual(kwargs["timeout"], 30)

    def test_fetch_changes_rejects_non_success_status(self) -> None:
        session = mock.Mock()
        session.request.return_value = make_response(403, "forbidden")

        with self.assertRaises(CalDAVRequestError) as ctx:
            _service(session).fetch_changes(None)
        self.assertEqual(ctx.exception.status_code, 403)
        self.assertIn("Forbidden", str(ctx.exception))

    def test_fetch_changes_propagates_transport_errors(self) -> None:
        session = mock.Mock()
        session.request.side_effect = requests.ConnectionError("refused")

        with self.assertRaises(requests.ConnectionError):
            _service(session).fetch_changes(None)

    def test_item_requests_target_uid_resource(self) -> None:
        session = mock.Mock()
        session.request.return_value = make_response(201)
        service = _service(session)

        service.put_event("a b@example.com", "BEGIN:VCALENDAR\r\nEND:VCALENDAR\r\n")
        method, url = session.request.call_args.args
        self.assertEqual(method, "PUT")
        self.assertEqual(url, "https://dav.example.com/user/calendar/a%20b@example.com.ics")
        self.assertEqual(
            session.request.call_args.kwargs["headers"]["Content-Type"], "text/calendar; charset=utf-8"
        )

        service.exists("x")
        self.assertEqual(session.request.call_args.args[0], "HEAD")
        service.delete_event("x")
        self.assertEqual(session.request.call_args.args, ("DELETE", "https://dav.example.com/user/calendar/x.ics"))

    def test_basic_auth_applied_to_own_session(self) -> None:
        config = CalDAVConfig.from_dict({"base_url": "https://dav.example.com/cal/", "username": "u", "password": "p"})
        service = CalDAVService(config)
        self.assertEqual(service.session.auth, ("u", "p"))
