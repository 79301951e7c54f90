"""Tests for the transactional mailer."""

import json

import httpx

from subscription_sync.services.mailer import CANCEL_LINK_SUBJECT, Mailer


def _mailer(handler, api_key="re_test") -> Mailer:
    return Mailer(
        api_key=api_key,
        sender="no-reply@example.test",
        api_url="https://mail.example.test/emails",
        transport=httpx.MockTransport(handler),
    )


def test_dev_mode_without_key_sends_nothing():
    def handler(request):
        raise AssertionError("no request expected")

    assert _mailer(handler, api_key=None).send("jane@example.com", "Hi", "<p>Hi</p>")


def test_send_posts_message():
    captured = []

    def handler(request):
        captured.append(request)
        return httpx.Response(200, json={"id": "msg_1"})

    assert _mailer(handler).send("jane@example.com", "Hi", "<p>Hi</p>")
    request = captured[0]
    assert request.headers["authorization"] == "Bearer re_test"
    assert json.loads(request.content) == {
        "from": "no-reply@example.test",
        "to": "jane@example.com",
        "subject": "Hi",
        "html": "<p>Hi</p>",
    }


def test_rejected_message_returns_false():
    assert not _mailer(lambda r: httpx.Response(422, text="bad")).send("j@e.com", "Hi", "x")


def test_network_error_returns_false():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    assert not _mailer(handler).send("j@e.com", "Hi", "x")


def test_cancel_link_message():
    captured = []

    def handler(request):
        captured.append(json.loads(request.content))
        return httpx.Response(200, json={})

    link = "https://sync.example.test/api/cancel?token=abc.def"
    assert _mailer(handler).send_cancel_link("jane@example.com", link, 30)
    body = captured[0]
    assert body["subject"] == CANCEL_LINK_SUBJECT
    assert link in body["html"]
    assert "30 minutes" in body["html"]
