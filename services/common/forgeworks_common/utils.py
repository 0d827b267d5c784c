import logging, subprocess, time
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()

def stamp(message: str) -> str:
    """Job log entry format: '[<iso-ts>] <message>'."""
    return f"[{utc_now_iso()}] {message}"

def read_secret(path: str) -> str:
    with open(path, "r", encoding="utf-8") as f:
        return f.read().strip()

def is_safe_path(p) -> bool:
    """Relative, slash-separated object key with no '..' segment."""
    if not isinstance(p, str) or not p or p.startswith("/"):
        return False
    return ".." not in p.split("/")

def run_cmd(args, cwd=None, timeout=120) -> str:
    """
    Run a command without a shell and return its combined stdout/stderr.
    Raises RuntimeError on a non-zero exit, with the tail of the output.
    """
    logger.debug("exec: %s", " ".join(args))
    p = subprocess.run(
        args,
        cwd=cwd,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        timeout=timeout,
        text=True,
        check=False,
    )
    out = p.stdout or ""
    if p.returncode != 0:
        raise RuntimeError(f"{args[0]} {args[1] if len(args) > 1 else ''} exited {p.returncode}: {out[-2000:]}")
    return out

def sleep_s(seconds: float):
    time.sleep(seconds)
