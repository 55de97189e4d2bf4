from __future__ import annotations

from pathlib import Path
import logging
import re
import subprocess


LOGGER = logging.getLogger("mrpilot.shell")
_URL_CREDENTIALS_RE = re.compile(r"(https?://)[^/@\s]+@")


class CommandError(RuntimeError):
    def __init__(self, message: str, *, returncode: int, stderr: str) -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


def redact(text: str) -> str:
    """Strip userinfo from any http(s) URL embedded in ``text``."""
    return _URL_CREDENTIALS_RE.sub(r"\1***@", text)


def _preview(text: str, *, limit: int = 200) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def run(
    argv: list[str],
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
    env: dict[str, str] | None = None,
    check: bool = True,
) -> str:
    proc = subprocess.run(
        argv,
        cwd=str(cwd) if cwd else None,
        input=input_text,
        env=env,
        text=True,
        capture_output=True,
        check=False,
    )
    if check and proc.returncode != 0:
        command = redact(" ".join(argv))
        stderr = redact(proc.stderr)
        LOGGER.error(
            "event=command_failed command=%s exit_code=%s stderr=%s stdout=%s",
            command,
            proc.returncode,
            _preview(stderr),
            _preview(redact(proc.stdout)),
        )
        raise CommandError(
            "Command failed\n"
            f"cmd: {command}\n"
            f"exit: {proc.returncode}\n"
            f"stdout:\n{redact(proc.stdout)}\n"
            f"stderr:\n{stderr}",
            returncode=proc.returncode,
            stderr=stderr,
        )
    return proc.stdout


def spawn(
    argv: list[str],
    *,
    cwd: Path | None = None,
    env: dict[str, str] | None = None,
) -> subprocess.Popen[str]:
    """Start a long-running process whose stdout/stderr are read line by line.

    The child leads its own process group so a timeout can signal everything it
    started, not just the direct child.
    """
    return subprocess.Popen(
        argv,
        cwd=str(cwd) if cwd else None,
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        bufsize=1,
        start_new_session=True,
    )
