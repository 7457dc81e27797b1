import pytest

from parley.console import ALWAYS, APPROVE, REJECT, prompt_approval, prompt_confirm, prompt_text


def _reply(answer):
    return lambda prompt: answer


def _closed(prompt):
    raise EOFError


def test_prompt_text_default_on_eof():
    assert prompt_text("> ", _closed, default="fallback") == "fallback"


class TestPromptConfirm:
    @pytest.mark.parametrize("answer,expected", [
        ("y", True), ("YES", True), ("n", False), ("nope", False), ("", True),
    ])
    def test_answers(self, answer, expected):
        assert prompt_confirm("Truncate?", input_fn=_reply(answer)) is expected

    def test_default_no(self):
        assert prompt_confirm("Truncate?", default=False, input_fn=_reply("")) is False

    def test_eof_takes_default(self):
        assert prompt_confirm("Truncate?", input_fn=_closed) is True


class TestPromptApproval:
    @pytest.mark.parametrize("answer,expected", [
        ("y", APPROVE), ("yes", APPROVE), ("a", ALWAYS), ("always", ALWAYS),
        ("n", REJECT), ("", REJECT), ("maybe", REJECT),
    ])
    def test_answers(self, answer, expected):
        assert prompt_approval("ls", _reply(answer)) == expected

    def test_shows_command_on_stderr(self, capsys):
        prompt_approval("rm -rf build", _reply("n"))

        captured = capsys.readouterr()
        assert "rm -rf build" in captured.err
        assert captured.out == ""
