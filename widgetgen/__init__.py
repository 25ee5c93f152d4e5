import logging
import os
from pathlib import Path
from typing import Dict

log = logging.getLogger(__name__)

ENV_FILE_VAR = "WIDGETGEN_ENV_FILE"


def parse_env_text(text: str) -> Dict[str, str]:
    """Parse KEY=VALUE lines; comments, blanks and lines without '=' are skipped."""
    values: Dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.removeprefix("export ").strip()
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        if key:
            values[key] = value
    return values


def load_env_file(path: Path) -> int:
    """Copy settings from path into os.environ without overriding existing ones.

    Returns how many variables were set.
    """
    if not path.is_file():
        return 0
    try:
        values = parse_env_text(path.read_text(encoding="utf-8"))
    except OSError as exc:
        log.warning("env.load_failed: path=%s err=%s", path, exc)
        return 0
    applied = 0
    for key, value in values.items():
        if key not in os.environ:
            os.environ[key] = value
            applied += 1
    return applied


def _load_dotenv_if_needed() -> None:
    # Tests configure the environment themselves.
    if os.getenv("PYTEST_CURRENT_TEST"):
        return
    load_env_file(Path(os.getenv(ENV_FILE_VAR, ".env")))


_load_dotenv_if_needed()
