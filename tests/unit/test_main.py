"""Tests for the command line entry point."""

import io
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from ai_models_bridge.__main__ import AnswerPrinter, load_images, parse_args, run_bridge
from ai_models_bridge.models.events import Done, TitleUpdate, UpdateAnswer


@pytest.fixture
def memory_config(tmp_path: Path) -> Path:
    """Write a config that keeps threads in memory."""
    path = tmp_path / "bridge.yaml"
    path.write_text("storage:\n  backend: memory\nmodels:\n  default: openrouter\n")
    return path


class TestParseArgs:
    """Test argument parsing."""

    def test_defaults(self) -> None:
        """Test an empty command line."""
        args = parse_args([])
        assert args.config is None
        assert args.model is None
        assert args.prompt is None
        assert args.image == []
        assert not args.dry_run

    def test_full_command_line(self) -> None:
        """Test every option is parsed."""
        args = parse_args(
            [
                "-c",
                "bridge.yaml",
                "-m",
                "copilot",
                "--mode",
                "reasoning",
                "--image",
                "a.png",
                "--image",
                "b.jpg",
                "--thread",
                "t1",
                "hello",
            ]
        )
        assert args.config == Path("bridge.yaml")
        assert args.model == "copilot"
        assert args.mode == "reasoning"
        assert args.image == [Path("a.png"), Path("b.jpg")]
        assert args.thread == "t1"
        assert args.prompt == "hello"

    def test_unknown_backend_rejected(self) -> None:
        """Test the backend choice is validated."""
        with pytest.raises(SystemExit):
            parse_args(["-m", "bard"])


class TestAnswerPrinter:
    """Test incremental answer printing."""

    def test_prints_only_new_text(self) -> None:
        """Test cumulative updates are written as deltas."""
        out = io.StringIO()
        printer = AnswerPrinter(out)

        printer(UpdateAnswer(text=""))
        printer(UpdateAnswer(text="hel"))
        printer(UpdateAnswer(text="hello"))
        printer(TitleUpdate(title="Greeting"))
        printer(Done(thread_id="t1"))
        printer.finish()

        assert out.getvalue() == "hello\n"

    def test_rewritten_text_starts_new_line(self) -> None:
        """Test a non-prefix update is written in full."""
        out = io.StringIO()
        printer = AnswerPrinter(out)

        printer(UpdateAnswer(text="draft"))
        printer(UpdateAnswer(text="final\n"))
        printer.finish()

        assert out.getvalue() == "draft\nfinal\n"

    def test_finish_without_output(self) -> None:
        """Test nothing is written when no text arrived."""
        out = io.StringIO()
        AnswerPrinter(out).finish()
        assert out.getvalue() == ""


class TestLoadImages:
    """Test image loading."""

    def test_content_type_guessed(self, tmp_path: Path) -> None:
        """Test file names drive the content type."""
        png = tmp_path / "cat.png"
        png.write_bytes(b"\x89PNG")
        blob = tmp_path / "blob"
        blob.write_bytes(b"x")

        images = load_images([png, blob])

        assert [i.filename for i in images] == ["cat.png", "blob"]
        assert images[0].content == b"\x89PNG"
        assert images[0].content_type == "image/png"
        assert images[1].content_type == "application/octet-stream"


class TestRunBridge:
    """Test one-shot bridge runs."""

    async def test_dry_run(self, memory_config: Path) -> None:
        """Test a dry run only validates configuration."""
        assert await run_bridge(parse_args(["-c", str(memory_config), "--dry-run"])) == 0

    async def test_missing_config_file(self, tmp_path: Path) -> None:
        """Test a missing config file is an error."""
        args = parse_args(["-c", str(tmp_path / "missing.yaml"), "hi"])
        assert await run_bridge(args) == 1

    async def test_list_threads(self, memory_config: Path) -> None:
        """Test an empty store lists nothing."""
        out = io.StringIO()
        args = parse_args(["-c", str(memory_config), "--list-threads"])
        assert await run_bridge(args, out=out) == 0
        assert out.getvalue() == ""

    async def test_empty_prompt(self, memory_config: Path) -> None:
        """Test a blank prompt exits with a usage error."""
        assert await run_bridge(parse_args(["-c", str(memory_config), "   "])) == 2

    async def test_backend_error(self, memory_config: Path) -> None:
        """Test a failed exchange exits non-zero."""
        out = io.StringIO()
        args = parse_args(["-c", str(memory_config), "hi"])
        assert await run_bridge(args, out=out) == 1
        assert out.getvalue() == ""

    async def test_send_streams_answer(self, memory_config: Path) -> None:
        """Test the answer is streamed to the output as it grows."""

        async def send(prompt: str, on_event, **options) -> str:
            for text in ("", "hi", "hi there"):
                on_event(UpdateAnswer(text=text))
            on_event(Done(thread_id="t1"))
            return "hi there"

        dispatcher = MagicMock()
        dispatcher.__aenter__.return_value = dispatcher
        dispatcher.__aexit__.return_value = False
        dispatcher.initialize = AsyncMock()
        dispatcher.send = AsyncMock(side_effect=send)
        create = AsyncMock(return_value=dispatcher)

        out = io.StringIO()
        args = parse_args(["-c", str(memory_config), "-m", "copilot", "--mode", "reasoning", "hi"])
        with patch("ai_models_bridge.core.dispatcher.create_dispatcher", create):
            assert await run_bridge(args, out=out) == 0

        assert out.getvalue() == "hi there\n"
        assert create.await_args.args[1] == ["copilot"]
        assert dispatcher.send.await_args.args == ("hi",)
        assert dispatcher.send.await_args.kwargs["mode"] == "reasoning"
        assert dispatcher.send.await_args.kwargs["images"] == []
