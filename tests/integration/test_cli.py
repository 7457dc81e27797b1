import io
import json
import tempfile

import pytest

import parley.cli as cli
from parley.conversation import ConversationState, ConversationStore, transcript_path
from parley.message import Message, MessageRole

from tests.conftest import sse_body, text_events


@pytest.fixture
def env(tmp_path, monkeypatch, mock_api):
    """Isolated temp dir, settings file, API key and mocked HTTP."""
    monkeypatch.setattr(tempfile, "tempdir", str(tmp_path))
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setattr("sys.stdin", io.StringIO(""))
    monkeypatch.setattr(cli, "HTTPTransport", lambda timeout: mock_api.transport())
    config = tmp_path / "parley.json"
    config.write_text(json.dumps({"transcript_name": "chat-", "startup_message": "Be brief."}))
    return config


def _store(tmp_path):
    return ConversationStore(transcript_path("chat-", tmp_path), confirm=lambda q: True)


class TestChat:
    def test_sends_question_and_saves_transcript(self, env, tmp_path, mock_api, capsys):
        mock_api.queue(sse_body(*text_events("Hi", " there")))

        code = cli.main(["--config", str(env), "hello", "world"])

        assert code == 0
        assert capsys.readouterr().out == "Hi there\n"
        body = mock_api.bodies[0]
        assert body["messages"] == [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "hello world"},
        ]
        assert "tools" in body
        assert _store(tmp_path).load().messages[-1].text == "Hi there"

    def test_piped_input_prepended(self, env, mock_api, monkeypatch):
        monkeypatch.setattr("sys.stdin", io.StringIO("some log output\n"))
        mock_api.queue(sse_body(*text_events("ok")))

        cli.main(["--config", str(env), "explain"])

        assert mock_api.bodies[0]["messages"][-1]["content"] == "some log output\n\nexplain"

    def test_plain_and_no_tools(self, env, mock_api):
        mock_api.queue(sse_body(*text_events("ok")))

        cli.main(["--config", str(env), "-p", "-n", "hi"])

        body = mock_api.bodies[0]
        assert body["messages"] == [{"role": "user", "content": "hi"}]
        assert "tools" not in body

    def test_continues_existing_conversation(self, env, tmp_path, mock_api):
        _store(tmp_path).save(ConversationState(
            model="gpt-4o-mini",
            messages=[
                Message.text_message(MessageRole.USER, "first"),
                Message.text_message(MessageRole.ASSISTANT, "answer"),
            ],
        ))
        mock_api.queue(sse_body(*text_events("ok")))

        cli.main(["--config", str(env), "second"])

        assert [m["content"] for m in mock_api.bodies[0]["messages"]] == ["first", "answer", "second"]

    def test_api_error_exits_nonzero(self, env, tmp_path, mock_api, capsys):
        mock_api.queue(b"invalid key", status_code=401)

        code = cli.main(["--config", str(env), "hi"])

        assert code == 1
        assert "API Error: 401 - invalid key" in capsys.readouterr().err
        assert not _store(tmp_path).exists()

    def test_missing_api_key_exits_nonzero(self, env, monkeypatch, capsys):
        monkeypatch.delenv("OPENAI_API_KEY")

        assert cli.main(["--config", str(env), "hi"]) == 1
        assert "OPENAI_API_KEY" in capsys.readouterr().err


class TestTrace:
    def test_trace_flag_enables_tracing(self, env, mock_api, monkeypatch):
        calls = []
        monkeypatch.setattr(cli, "instrument", lambda: calls.append(True))
        mock_api.queue(sse_body(*text_events("ok")))

        assert cli.main(["--config", str(env), "--trace", "hi"]) == 0
        assert calls == [True]

    def test_tracing_off_by_default(self, env, mock_api, monkeypatch):
        calls = []
        monkeypatch.setattr(cli, "instrument", lambda: calls.append(True))
        mock_api.queue(sse_body(*text_events("ok")))

        cli.main(["--config", str(env), "hi"])

        assert calls == []

    def test_missing_otel_reported(self, env, monkeypatch, capsys):
        def unavailable():
            raise ImportError("Tracing needs opentelemetry-api")

        monkeypatch.setattr(cli, "instrument", unavailable)

        assert cli.main(["--config", str(env), "--trace", "hi"]) == 1
        assert "Tracing needs opentelemetry-api" in capsys.readouterr().err


class TestHousekeeping:
    def test_history_printed_without_input(self, env, tmp_path, capsys):
        _store(tmp_path).save(ConversationState(
            model="gpt-4o-mini",
            messages=[Message.text_message(MessageRole.USER, "earlier question")],
        ))

        assert cli.main(["--config", str(env)]) == 0
        assert "--- user ---\nearlier question" in capsys.readouterr().out

    def test_clear(self, env, tmp_path, capsys):
        _store(tmp_path).save(ConversationState(model="gpt-4o-mini"))

        assert cli.main(["--config", str(env), "-c"]) == 0
        assert not _store(tmp_path).exists()
        assert "Conversation cleared." in capsys.readouterr().out

    def test_clear_all(self, env, tmp_path, capsys):
        (tmp_path / "chat-1").write_text("{}")
        (tmp_path / "chat-2").write_text("{}")

        assert cli.main(["--config", str(env), "-C"]) == 0
        assert "Deleted 2 conversation transcript(s)." in capsys.readouterr().out

    def test_last_message(self, env, tmp_path, capsys):
        _store(tmp_path).save(ConversationState(
            model="gpt-4o-mini",
            messages=[Message.text_message(MessageRole.ASSISTANT, "the answer")],
        ))

        cli.main(["--config", str(env), "-l"])

        assert json.loads(capsys.readouterr().out) == {"type": "text", "text": "the answer"}


class TestStartupRole:
    @pytest.mark.parametrize("model,role", [
        ("gpt-4o-mini", MessageRole.SYSTEM),
        ("o1-mini", MessageRole.USER),
        ("o3-mini", MessageRole.USER),
        ("gemini-1.5-pro", MessageRole.USER),
    ])
    def test_role_depends_on_model(self, model, role):
        settings = cli.Settings(provider="oai")
        settings.providers["oai"] = settings.providers["oai"].model_copy(update={"model": model})

        [message] = cli.initial_messages(settings, plain=False)

        assert message.role == role
        assert message.text == settings.startup_message

    def test_plain_has_no_startup_message(self):
        assert cli.initial_messages(cli.Settings(), plain=True) == []
