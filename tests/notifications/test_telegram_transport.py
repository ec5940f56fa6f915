"""TelegramTransport over a TelegramClient backed by httpx.MockTransport."""
import json

import httpx
import pytest

from convbot.schemas.tasks import BatchFile, Task
from convbot.services.notifications.transport import DeliveryError, NotifyTarget, TelegramTransport
from convbot.services.telegram.client import TelegramAPIError, TelegramClient


class FakeBotAPI:
    def __init__(self):
        self.calls = []
        self.fail = {}
        self.flood = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        method = request.url.path.rsplit("/", 1)[-1]
        if request.headers.get("content-type", "").startswith("application/json"):
            body = json.loads(request.content)
        else:
            body = request.content
        self.calls.append((method, body))
        if self.flood.get(method):
            self.flood[method] -= 1
            return httpx.Response(
                200,
                json={"ok": False, "error_code": 429, "description": "Too Many Requests", "parameters": {"retry_after": 1}},
            )
        if method in self.fail:
            return httpx.Response(200, json={"ok": False, "error_code": 400, "description": self.fail[method]})
        if method == "sendDocument":
            return httpx.Response(200, json={"ok": True, "result": {"message_id": 9, "document": {"file_id": "DOC1"}}})
        return httpx.Response(200, json={"ok": True, "result": {"message_id": 500 + len(self.calls)}})

    def methods(self):
        return [m for m, _ in self.calls]


@pytest.fixture
def api():
    return FakeBotAPI()


@pytest.fixture
def client(api):
    client = TelegramClient(token="123:abc", http_client=httpx.Client(transport=httpx.MockTransport(api)))
    yield client
    client.close()


@pytest.fixture
def transport(client):
    return TelegramTransport(client)


def test_send_status_returns_target(transport, api):
    target = transport.send_status("42", "queue.queued", "en", "a.png", position=2)
    assert target == NotifyTarget(chat_id="42", message_id=501)
    method, body = api.calls[0]
    assert method == "sendMessage"
    assert body["chat_id"] == 42
    assert body["parse_mode"] == "HTML"
    assert "a.png" in body["text"]


def test_send_status_failure_returns_none(transport, api):
    api.fail["sendMessage"] = "Forbidden: bot was blocked by the user"
    assert transport.send_status("42", "queue.started", "en") is None


def test_edit_appends_priority_suffix(transport, api):
    transport.edit_status(NotifyTarget("42", 7), "queue.queued", "en", "a.png", suffix_key="queue.priority_suffix", position=1)
    method, body = api.calls[0]
    assert method == "editMessageText"
    assert body["message_id"] == 7
    assert body["text"].endswith("Queue: priority")


def test_edit_and_delete_failures_are_swallowed(transport, api):
    api.fail["editMessageText"] = "Bad Request: message is not modified"
    api.fail["deleteMessage"] = "Bad Request: message to delete not found"
    transport.edit_status(NotifyTarget("42", 7), "queue.started", "en")
    transport.delete_status(NotifyTarget("42", 7))
    assert api.methods() == ["editMessageText", "deleteMessage"]


def test_notice_failure_raises_delivery_error(transport, api):
    api.fail["sendMessage"] = "Bad Request: chat not found"
    with pytest.raises(DeliveryError):
        transport.send_notice("42", "batch.timeout", "en", got=1, expected=3)


def test_send_result_uploads_file(transport, api, tmp_path):
    path = tmp_path / "out.jpg"
    path.write_bytes(b"jpeg")
    ref = transport.send_result("42", str(path), "a.jpg", caption="Remaining credits: 4/50")
    assert ref == "DOC1"
    method, body = api.calls[0]
    assert method == "sendDocument"
    assert b'filename="a.jpg"' in body
    assert b"Remaining credits: 4/50" in body


def test_send_result_failures_raise_delivery_error(transport, api, tmp_path):
    with pytest.raises(DeliveryError, match="send document failed"):
        transport.send_result("42", str(tmp_path / "missing.jpg"), "a.jpg")

    path = tmp_path / "out.jpg"
    path.write_bytes(b"jpeg")
    api.fail["sendDocument"] = "Request Entity Too Large"
    with pytest.raises(DeliveryError, match="Request Entity Too Large"):
        transport.send_result("42", str(path), "a.jpg")


def test_format_prompt_keyboard(transport, api):
    task = Task(user_id="u1", chat_id="42", file_name="a.png", source_format="png")
    transport.prompt_format(task, ["BMP", "GIF", "JPG", "WEBP"])
    _, body = api.calls[0]
    rows = body["reply_markup"]["inline_keyboard"]
    assert [len(r) for r in rows] == [3, 1]
    assert rows[0][0] == {"text": "BMP", "callback_data": f"bmp_for_{task.id}"}


def test_batch_choice_keyboard(transport, api):
    files = [BatchFile(file_id="a"), BatchFile(file_id="b")]
    task = Task(user_id="u1", chat_id="42", source_format="jpg", batch_files=files, locale="ru")
    transport.prompt_batch_choice(task)
    _, body = api.calls[0]
    assert "<b>2</b>" in body["text"]
    buttons = [row[0]["callback_data"] for row in body["reply_markup"]["inline_keyboard"]]
    assert buttons == [f"batch_all_{task.id}", f"batch_sep_{task.id}"]


def test_refresh_prompt_edits_in_place(transport, api):
    task = Task(user_id="u1", chat_id="42", file_name="a.png", source_format="png", status_message_id=7)
    transport.refresh_format_prompt(task, ["JPG"], remaining=3)
    method, body = api.calls[0]
    assert method == "editMessageText"
    assert body["message_id"] == 7
    assert "Remaining credits: 3/" in body["text"]
    assert "out of credits" not in body["text"]
    assert body["reply_markup"]["inline_keyboard"] == [[{"text": "JPG", "callback_data": f"jpg_for_{task.id}"}]]


def test_refresh_prompt_without_credits_drops_buttons(transport, api):
    task = Task(user_id="u1", chat_id="42", file_name="a.png", source_format="png", status_message_id=7)
    transport.refresh_format_prompt(task, [], remaining=0)
    _, body = api.calls[0]
    assert "out of credits" in body["text"]
    assert body["reply_markup"] == {"inline_keyboard": []}


def test_refresh_prompt_unlimited_has_no_credits_line(transport, api):
    task = Task(user_id="u1", chat_id="42", file_name="a.png", source_format="png", status_message_id=7)
    transport.refresh_format_prompt(task, ["JPG", "WEBP"])
    _, body = api.calls[0]
    assert "Remaining credits" not in body["text"]


def test_api_error_carries_code(client, api):
    api.fail["sendMessage"] = "Too Many Requests"
    with pytest.raises(TelegramAPIError) as exc:
        client.send_message("42", "hi")
    assert exc.value.error_code == 400
    assert exc.value.method == "sendMessage"


def test_short_flood_wait_retried_once(client, api, monkeypatch):
    sleeps = []
    monkeypatch.setattr("convbot.services.telegram.client.time.sleep", sleeps.append)
    api.flood["sendMessage"] = 1
    result = client.send_message("42", "hi")
    assert result["ok"]
    assert sleeps == [1]
    assert api.methods() == ["sendMessage", "sendMessage"]


def test_repeated_flood_wait_gives_up(client, api, monkeypatch):
    monkeypatch.setattr("convbot.services.telegram.client.time.sleep", lambda s: None)
    api.flood["sendMessage"] = 2
    with pytest.raises(TelegramAPIError) as exc:
        client.send_message("42", "hi")
    assert exc.value.error_code == 429
    assert exc.value.retry_after == 1


def test_unchanged_edit_is_not_an_error(client, api, caplog):
    api.fail["editMessageText"] = "Bad Request: message is not modified: specified new message content is the same"
    client.edit_message("42", 7, "same text")
    assert not [r for r in caplog.records if r.name == "convbot.services.telegram.client"]
