import json

import httpx
import pytest

from whatsapp.models import Message
from whatsapp.services.messaging import (
    PermanentDeliveryError,
    TransientDeliveryError,
    WhatsAppService,
    truncate,
)


def provider_ok(message_id="wamid.ABC", wa_id="905550000001"):
    return httpx.Response(
        200,
        json={
            "messaging_product": "whatsapp",
            "contacts": [{"input": wa_id, "wa_id": wa_id}],
            "messages": [{"id": message_id}],
        },
    )


@pytest.fixture
def transport(monkeypatch):
    """Route gateway calls to a handler; ``requests`` collects what was sent."""
    requests = []
    state = {"response": provider_ok()}

    def handler(request):
        requests.append(request)
        response = state["response"]
        if isinstance(response, Exception):
            raise response
        return response

    monkeypatch.setattr(WhatsAppService, "transport", httpx.MockTransport(handler))
    return requests, state


def test_truncate_keeps_short_text():
    assert truncate("Yes", 20) == "Yes"


def test_truncate_marks_the_cut():
    assert truncate("a" * 30, 24) == "a" * 22 + ".."


def test_build_payload_rejects_unknown_type():
    with pytest.raises(PermanentDeliveryError):
        WhatsAppService.build_payload("sticker", "905550000001", {})


@pytest.mark.django_db
def test_send_text_posts_envelope_and_records_audit_row(transport):
    requests, _ = transport

    result = WhatsAppService.send_text("905550000001", "Hello")

    assert result == {"message_id": "wamid.ABC", "recipient_id": "905550000001"}
    request = requests[0]
    assert request.url == "https://graph.example.test/v22.0/1000/messages"
    assert request.headers["Authorization"] == "Bearer test-token"
    body = json.loads(request.content)
    assert body["messaging_product"] == "whatsapp"
    assert body["to"] == "905550000001"
    assert body["type"] == "text"
    assert body["text"]["body"] == "Hello"

    message = Message.objects.get(message_id="wamid.ABC")
    assert message.direction == "outgoing"
    assert message.status == "sent"
    assert message.body == "Hello"


@pytest.mark.django_db
def test_template_with_quick_reply(transport):
    requests, _ = transport

    WhatsAppService.send_template(
        "905550000001", "new_lesson", header=["Title"], body=["x" * 2000], quick_reply="Done"
    )

    template = json.loads(requests[0].content)["template"]
    assert template["name"] == "new_lesson"
    assert template["language"] == {"code": "tr"}
    header, body, button = template["components"]
    assert header["parameters"][0]["text"] == "Title"
    assert len(body["parameters"][0]["text"]) == 1024
    assert button["sub_type"] == "quick_reply"
    assert button["parameters"][0]["payload"] == "new_lesson_0:Done"


@pytest.mark.django_db
def test_list_message_truncates_rows(transport):
    requests, _ = transport
    long_option = "An option that is far too long for a row"

    WhatsAppService.send_list_message("905550000001", "Pick one", ["Short", long_option])

    rows = json.loads(requests[0].content)["interactive"]["action"]["sections"][0]["rows"]
    assert rows[0] == {"id": "option_0", "title": "Short"}
    assert rows[1]["title"] == long_option[:22] + ".."


@pytest.mark.django_db
def test_button_message_keeps_three_buttons(transport):
    requests, _ = transport

    WhatsAppService.send_button_message(
        "905550000001", "Choose", ["One", "Two", "Three", "Four"]
    )

    buttons = json.loads(requests[0].content)["interactive"]["action"]["buttons"]
    assert [b["reply"]["title"] for b in buttons] == ["One", "Two", "Three"]


@pytest.mark.django_db
def test_document_filename_comes_from_url(transport):
    requests, _ = transport

    WhatsAppService.send_document("905550000001", "https://cdn.example.test/files/guide.pdf")

    document = json.loads(requests[0].content)["document"]
    assert document["filename"] == "guide.pdf"


@pytest.mark.django_db
@pytest.mark.parametrize("status_code", [400, 401, 404])
def test_client_errors_are_permanent(transport, status_code):
    _, state = transport
    state["response"] = httpx.Response(status_code, json={"error": {"message": "bad"}})

    with pytest.raises(PermanentDeliveryError) as excinfo:
        WhatsAppService.send_text("905550000001", "Hello")

    assert excinfo.value.status_code == status_code
    assert not Message.objects.exists()


@pytest.mark.django_db
@pytest.mark.parametrize("status_code", [408, 429, 500, 503])
def test_throttling_and_server_errors_are_transient(transport, status_code):
    _, state = transport
    state["response"] = httpx.Response(status_code, text="try later")

    with pytest.raises(TransientDeliveryError):
        WhatsAppService.send_text("905550000001", "Hello")


@pytest.mark.django_db
def test_transport_failure_is_transient(transport):
    _, state = transport
    state["response"] = httpx.ConnectTimeout("timed out")

    with pytest.raises(TransientDeliveryError):
        WhatsAppService.send_text("905550000001", "Hello")


@pytest.mark.django_db
def test_missing_access_token_is_permanent(transport, settings):
    settings.WHATSAPP_ACCESS_TOKEN = ""

    with pytest.raises(PermanentDeliveryError):
        WhatsAppService.send_text("905550000001", "Hello")
