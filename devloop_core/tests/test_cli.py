import pytest

from devloop_core.cli import build_parser, compose_input, main


def test_compose_input():
    assert compose_input(["dev-loop", "run", "plan.md"], None, None) == "/dev-loop run plan.md"
    assert compose_input(["fix", "it"], None, None) == "fix it"
    assert compose_input([], "explain", "some log\n") == "some log\n\nexplain"
    assert compose_input([], None, "piped only") == "piped only"


def test_parser_options():
    args = build_parser().parse_args(["-o", "stream-json", "--max-session-turns", "3", "hello"])
    assert args.output_format == "stream-json"
    assert args.max_session_turns == 3
    assert args.words == ["hello"]


def test_prompt_flag_and_positional_words_conflict(capsys):
    with pytest.raises(SystemExit) as exc_info:
        main(["-p", "explain", "extra", "words"])
    assert exc_info.value.code == 2
    assert "not both" in capsys.readouterr().err
