import asyncio
import sys

from cmdforge.config_loader import ExecutionConfig
from cmdforge.executor import SCRIPT_PREFIX, ExecutionEngine, find_interpreter
from cmdforge.models import SUCCESS_MESSAGE, UNAVAILABLE_MESSAGE


def _engine(tmp_path, timeout: float = 30.0, interpreter: str | None = sys.executable) -> ExecutionEngine:
    work = tmp_path / "work"
    scratch = tmp_path / "scratch"
    work.mkdir()
    scratch.mkdir()
    config = ExecutionConfig(
        timeout_seconds=timeout,
        working_dir=str(work),
        scratch_dir=str(scratch),
        interpreter=interpreter,
    )
    return ExecutionEngine(config)


def _leftover_scripts(tmp_path):
    return list((tmp_path / "scratch").glob(f"{SCRIPT_PREFIX}*.py"))


def test_lists_working_directory(tmp_path):
    engine = _engine(tmp_path)
    (tmp_path / "work" / "a.txt").write_text("a")
    (tmp_path / "work" / "b.txt").write_text("b")

    outcome = asyncio.run(engine.execute("import os\nprint(sorted(os.listdir('.')))"))

    assert outcome.status == "success"
    assert outcome.exit_code == 0
    assert outcome.display() == "['a.txt', 'b.txt']"
    assert _leftover_scripts(tmp_path) == []


def test_silent_success_uses_default_message(tmp_path):
    outcome = asyncio.run(_engine(tmp_path).execute("x = 1"))

    assert outcome.succeeded
    assert outcome.stdout == ""
    assert outcome.display() == SUCCESS_MESSAGE


def test_nonzero_exit_reports_stderr(tmp_path):
    code = "import sys\nprint('partial')\nsys.stderr.write('boom\\n')\nsys.exit(3)"
    outcome = asyncio.run(_engine(tmp_path).execute(code))

    assert outcome.status == "failed"
    assert outcome.exit_code == 3
    assert outcome.stdout == "partial"
    assert outcome.display() == "boom"


def test_nonzero_exit_without_stderr(tmp_path):
    outcome = asyncio.run(_engine(tmp_path).execute("import sys\nsys.exit(2)"))
    assert outcome.display() == "Process failed with exit code 2"


def test_timeout_kills_and_cleans_up(tmp_path):
    engine = _engine(tmp_path, timeout=0.5)
    code = "import time\nprint('started', flush=True)\ntime.sleep(30)"

    outcome = asyncio.run(engine.execute(code))

    assert outcome.status == "timeout"
    assert outcome.display() == "Error: Python script execution timed out (0.5 seconds)"
    assert outcome.duration_seconds < 10
    assert outcome.stdout == "started"
    assert _leftover_scripts(tmp_path) == []


def test_cancel_stops_running_script(tmp_path):
    engine = _engine(tmp_path)

    async def scenario():
        cancel = asyncio.Event()
        task = asyncio.ensure_future(engine.execute("import time\ntime.sleep(30)", cancel=cancel))
        await asyncio.sleep(0.3)
        cancel.set()
        return await task

    outcome = asyncio.run(scenario())

    assert outcome.status == "cancelled"
    assert outcome.display() == "Error: Execution cancelled"
    assert _leftover_scripts(tmp_path) == []


def test_missing_interpreter_is_unavailable(tmp_path):
    engine = ExecutionEngine(ExecutionConfig(
        working_dir=str(tmp_path),
        interpreter_candidates=["definitely-not-a-python-binary"],
    ))

    outcome = asyncio.run(engine.execute("print(1)"))

    assert outcome.status == "unavailable"
    assert outcome.display() == UNAVAILABLE_MESSAGE
    assert not engine.available


def test_launch_failure_becomes_error_outcome(tmp_path):
    engine = _engine(tmp_path, interpreter=str(tmp_path / "no-such-python"))

    outcome = asyncio.run(engine.execute("print(1)"))

    assert outcome.status == "error"
    assert outcome.display().startswith("Error: ")
    assert _leftover_scripts(tmp_path) == []


def test_unicode_output_survives(tmp_path):
    outcome = asyncio.run(_engine(tmp_path).execute("print('héllo ✓')"))
    assert outcome.display() == "héllo ✓"


def test_find_interpreter_skips_missing_commands():
    assert find_interpreter(["definitely-not-a-python-binary", sys.executable]) == sys.executable
    assert find_interpreter(["definitely-not-a-python-binary"]) is None


def test_line_longer_than_stream_buffer_is_captured(tmp_path):
    outcome = asyncio.run(_engine(tmp_path).execute("print('x' * 2_000_000)\nprint('done')"))

    assert outcome.status == "success"
    assert outcome.stdout.startswith("x" * 1000)
    assert outcome.stdout.endswith("\ndone")
    assert len(outcome.stdout) == 2_000_000 + len("\ndone")


def test_multibyte_characters_split_across_reads(tmp_path):
    outcome = asyncio.run(_engine(tmp_path).execute("print('é' * 100_000)"))
    assert outcome.display() == "é" * 100_000
