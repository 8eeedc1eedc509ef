from unittest.mock import MagicMock

import requests

from notifyctl.config import DEFAULT_CONFIG
from notifyctl.delivery import WhatsAppClient


def _response(status, body=None, text=""):
    resp = MagicMock()
    resp.status_code = status
    resp.ok = 200 <= status < 300
    resp.text = text
    if body is None:
        resp.json.side_effect = ValueError("no json")
    else:
        resp.json.return_value = body
    return resp


def _client(session, **kwargs):
    return WhatsAppClient("123456", "secret", session=session, **kwargs)


def test_deliver_posts_template_message():
    session = MagicMock()
    session.post.return_value = _response(200, {"messages": [{"id": "wamid.1"}]})

    result = _client(session).deliver("+5511987654321", "  Ana ")

    assert result.ok
    assert result.ack == {"messages": [{"id": "wamid.1"}]}
    url = session.post.call_args.args[0]
    kwargs = session.post.call_args.kwargs
    assert url == "https://graph.facebook.com/v21.0/123456/messages"
    assert kwargs["headers"]["Authorization"] == "Bearer secret"
    assert kwargs["timeout"] == 20
    payload = kwargs["json"]
    assert payload["to"] == "+5511987654321"
    assert payload["type"] == "template"
    assert payload["template"]["name"] == "avaliacao_pos_consulta_v1"
    assert payload["template"]["language"] == {"code": "pt_BR"}
    assert payload["template"]["components"][0]["parameters"] == [{"type": "text", "text": "Ana"}]


def test_provider_error_message_becomes_failure_reason():
    session = MagicMock()
    session.post.return_value = _response(
        400, {"error": {"message": "Recipient phone number not in allowed list", "code": 131030}}
    )

    result = _client(session).deliver("+5511987654321", "Ana")

    assert not result.ok
    assert result.error == "HTTP 400: Recipient phone number not in allowed list"


def test_non_json_error_body():
    session = MagicMock()
    session.post.return_value = _response(502, text="Bad Gateway")

    result = _client(session).deliver("+1", "x")

    assert not result.ok
    assert result.error == "HTTP 502: Bad Gateway"


def test_transport_error_is_failure():
    session = MagicMock()
    session.post.side_effect = requests.ConnectionError("connection refused")

    result = _client(session).deliver("+1", "x")

    assert not result.ok
    assert "connection refused" in result.error


def test_missing_credentials_fail_without_calling_provider():
    session = MagicMock()
    result = WhatsAppClient(None, None, session=session).deliver("+1", "x")

    assert not result.ok
    assert result.error == "WhatsApp credentials not configured"
    session.post.assert_not_called()


def test_from_env(monkeypatch):
    monkeypatch.setenv("PHONE_NUMBER_ID", "999")
    monkeypatch.setenv("WHATSAPP_TOKEN", "tok")
    cfg = dict(DEFAULT_CONFIG, template_name="lembrete", graph_api_version="v22.0",
               delivery_timeout_seconds="5")

    client = WhatsAppClient.from_env(cfg, session=MagicMock())

    assert client.configured
    assert client.template_name == "lembrete"
    assert client.timeout == 5
    assert client.url == "https://graph.facebook.com/v22.0/999/messages"
