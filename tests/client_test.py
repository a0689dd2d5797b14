import unittest
from unittest.mock import MagicMock, patch

import requests

from sessionlite.client import SessionLiteClient


def make_response(status_code=200, json_body=None, text="", content_type="application/json"):
    response = MagicMock()
    response.status_code = status_code
    response.headers = {"content-type": content_type}
    response.json.return_value = json_body
    response.text = text
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(response=response)
    return response


class ClientTests(unittest.TestCase):

    def setUp(self):
        patcher = patch("sessionlite.client.requests.Session")
        self.session = patcher.start().return_value
        self.addCleanup(patcher.stop)
        self.client = SessionLiteClient("http://ops:8000/", timeout=3)

    def test_create_session(self):
        self.session.request.return_value = make_response(201, {"id": "r1"})

        record = self.client.create_session(max_inactive_interval=90, attributes={"user": "alice"})

        self.assertEqual(record, {"id": "r1"})
        self.session.request.assert_called_once_with(
            "POST",
            "http://ops:8000/api/sessions",
            json={"max_inactive_interval": 90, "attributes": {"user": "alice"}},
            timeout=3,
        )

    def test_missing_record_is_none(self):
        self.session.request.return_value = make_response(404, {"detail": "not found"})
        self.assertIsNone(self.client.get_session("gone"))
        self.assertIsNone(self.client.touch_session("gone"))
        self.assertIsNone(self.client.delete_session("gone"))

    def test_server_errors_raise(self):
        self.session.request.return_value = make_response(503, {"detail": "store down"})
        with self.assertRaises(requests.exceptions.HTTPError):
            self.client.get_session("r1")

    def test_sweep_sends_minute(self):
        self.session.request.return_value = make_response(200, {"bucket_ms": 60000})
        self.client.sweep(60000)
        self.assertEqual(self.session.request.call_args.kwargs["json"], {"minute_ms": 60000})

    def test_metrics_returns_text(self):
        self.session.request.return_value = make_response(
            200, text="sessionlite_sweeps_total 0", content_type="text/plain; charset=utf-8"
        )
        self.assertEqual(self.client.metrics(), "sessionlite_sweeps_total 0")

    def test_context_manager_closes_session(self):
        with self.client as client:
            self.assertIs(client, self.client)
        self.session.close.assert_called_once()


if __name__ == "__main__":
    unittest.main()
