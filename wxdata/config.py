"""Configuration loading and well-known paths for the local data CLI."""

from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

_FALLBACK_HOME = Path("/tmp")


@dataclass
class Config:
    """Resolved configuration: where the data lives and where derived files go."""

    db_dir: Path
    keys_file: Path
    decrypted_dir: Path
    wechat_process: str = ""


def _string_field(raw: object, name: str) -> Optional[str]:
    if not isinstance(raw, dict):
        return None
    value = raw.get(name)
    return value if isinstance(value, str) else None


def _relative_to(base_dir: Path, value: str) -> Path:
    path = Path(value)
    return path if path.is_absolute() else base_dir / path


def load_config() -> Config:
    """Load config.json from the working directory, program directory or ~/.wx-cli."""
    config_path = find_config_file()
    try:
        content = config_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise OSError(f"failed to read config.json: {config_path}: {exc}") from exc
    try:
        raw = json.loads(content)
    except ValueError as exc:
        raise ValueError(f"config.json is malformed: {exc}") from exc

    db_dir_value = _string_field(raw, "db_dir")
    db_dir = Path(db_dir_value) if db_dir_value is not None else default_db_dir()

    base_dir = config_path.parent

    keys_value = _string_field(raw, "keys_file")
    keys_file = (
        _relative_to(base_dir, keys_value)
        if keys_value is not None
        else base_dir / "all_keys.json"
    )

    decrypted_value = _string_field(raw, "decrypted_dir")
    decrypted_dir = (
        _relative_to(base_dir, decrypted_value)
        if decrypted_value is not None
        else base_dir / "decrypted"
    )

    process_value = _string_field(raw, "wechat_process")
    wechat_process = process_value if process_value is not None else default_wechat_process()

    return Config(
        db_dir=db_dir,
        keys_file=keys_file,
        decrypted_dir=decrypted_dir,
        wechat_process=wechat_process,
    )


def _current_dir() -> Optional[Path]:
    try:
        return Path.cwd()
    except OSError:
        return None


def _exe_dir() -> Optional[Path]:
    program = sys.argv[0] if sys.argv else ""
    if not program:
        return None
    try:
        return Path(program).resolve().parent
    except OSError:
        return None


def find_config_file() -> Path:
    """Return the existing config file, or the path where one would be written."""
    cwd_dir = _current_dir()
    exe_dir = _exe_dir()
    cli_home = cli_home_dir()
    home_dir = cli_home if cli_home != _FALLBACK_HOME else None

    found = find_existing_config_path(cwd_dir, exe_dir, home_dir)
    if found is not None:
        return found
    return default_config_path(cwd_dir, exe_dir, home_dir)


def find_existing_config_path(
    cwd_dir: Optional[Path], exe_dir: Optional[Path], home_dir: Optional[Path]
) -> Optional[Path]:
    """First existing config among cwd, program directory and home, in that order."""
    candidates = [
        config_path_in_dir(cwd_dir) if cwd_dir is not None else None,
        config_path_in_dir(exe_dir) if exe_dir is not None else None,
        home_config_path(home_dir) if home_dir is not None else None,
    ]
    return next((path for path in candidates if path is not None and path.exists()), None)


def default_config_path(
    cwd_dir: Optional[Path], exe_dir: Optional[Path], home_dir: Optional[Path]
) -> Path:
    """Config path to use when none exists yet."""
    if cwd_dir is not None:
        return config_path_in_dir(cwd_dir)
    if exe_dir is not None:
        return config_path_in_dir(exe_dir)
    if home_dir is not None:
        return home_config_path(home_dir)
    return Path("config.json")


def config_path_in_dir(dir: Path) -> Path:
    return Path(dir) / "config.json"


def home_config_path(home_dir: Path) -> Path:
    return Path(home_dir) / ".wx-cli" / "config.json"


def cli_dir() -> Path:
    """Directory holding the CLI's own state (~/.wx-cli)."""
    return cli_home_dir() / ".wx-cli"


def _home_or_none() -> Optional[Path]:
    try:
        return Path.home()
    except (RuntimeError, KeyError, OSError):
        return None


def cli_home_dir() -> Path:
    """Home directory of the invoking user, honouring sudo."""
    return resolve_cli_home(_home_or_none() or _FALLBACK_HOME, sudo_user_home_dir())


def resolve_cli_home(default_home: Path, sudo_home: Optional[Path]) -> Path:
    return sudo_home if sudo_home is not None else default_home


def sudo_user_home_dir() -> Optional[Path]:
    """Home directory of $SUDO_USER, if set and known to the password database."""
    sudo_user = os.environ.get("SUDO_USER", "").strip()
    if not sudo_user or "\0" in sudo_user:
        return None
    try:
        import pwd
    except ImportError:
        return None
    try:
        entry = pwd.getpwnam(sudo_user)
    except KeyError:
        return None
    if not entry.pw_dir:
        return None
    return Path(entry.pw_dir)


def sock_path() -> Path:
    return cli_dir() / "daemon.sock"


def pid_path() -> Path:
    return cli_dir() / "daemon.pid"


def log_path() -> Path:
    return cli_dir() / "daemon.log"


def cache_dir() -> Path:
    return cli_dir() / "cache"


def mtime_file() -> Path:
    return cache_dir() / "_mtimes.json"


def default_db_dir() -> Path:
    """Platform default location of the data files."""
    if sys.platform == "darwin":
        return (_home_or_none() or Path()) / (
            "Library/Containers/com.tencent.xinWeChat/Data/Documents/xwechat_files"
        )
    if sys.platform.startswith("linux"):
        return (_home_or_none() or Path()) / "Documents/xwechat_files"
    if sys.platform == "win32":
        return Path(os.environ.get("APPDATA", "")) / "Tencent/xwechat"
    return Path(".")


def default_wechat_process() -> str:
    if sys.platform.startswith("linux"):
        return "wechat"
    if sys.platform == "win32":
        return "Weixin.exe"
    return "WeChat"


def auto_detect_db_dir() -> Optional[Path]:
    """Find the most recently used db_storage directory, if any."""
    if sys.platform == "darwin":
        return _detect_macos()
    if sys.platform.startswith("linux"):
        return _detect_linux()
    if sys.platform == "win32":
        return _detect_windows()
    return None


def _storage_dirs_under(base: Path) -> list[Path]:
    try:
        entries = list(base.iterdir())
    except OSError:
        return []
    return [entry / "db_storage" for entry in entries if (entry / "db_storage").is_dir()]


def _dir_mtime(path: Path) -> float:
    try:
        return path.stat().st_mtime
    except OSError:
        return 0.0


def _newest(candidates: list[Path], key) -> Optional[Path]:
    if not candidates:
        return None
    return sorted(candidates, key=key)[-1]


def _detect_macos() -> Optional[Path]:
    home = sudo_user_home_dir() or _home_or_none()
    if home is None:
        return None
    base = home / "Library/Containers/com.tencent.xinWeChat/Data/Documents/xwechat_files"
    if not base.exists():
        return None
    return _newest(_storage_dirs_under(base), _dir_mtime)


def _latest_db_key(path: Path) -> float:
    latest = latest_db_mtime(path)
    return latest if latest is not None else 0.0


def _detect_linux() -> Optional[Path]:
    home = _home_or_none()
    if home is None:
        return None
    candidates: list[Path] = []
    for base_home in (home, sudo_user_home_dir()):
        if base_home is None:
            continue
        xwechat = base_home / "Documents/xwechat_files"
        if xwechat.exists():
            candidates.extend(_storage_dirs_under(xwechat))
        old = base_home / ".local/share/weixin/data/db_storage"
        if old.is_dir():
            candidates.append(old)
    # Rank by the newest .db file inside, since new messages touch only the files.
    return _newest(candidates, _latest_db_key)


def latest_db_mtime(dir: Path) -> Optional[float]:
    """Newest modification time of any .db file below `dir`, recursively."""
    try:
        entries = list(Path(dir).iterdir())
    except OSError:
        return None
    latest: Optional[float] = None
    for path in entries:
        if path.is_dir():
            sub = latest_db_mtime(path)
            mtime = sub if sub is not None else 0.0
        elif path.suffix == ".db":
            mtime = _dir_mtime(path)
        else:
            continue
        latest = mtime if latest is None else max(latest, mtime)
    return latest


def _known_documents_dir() -> Optional[Path]:
    profile = os.environ.get("USERPROFILE")
    home = Path(profile) if profile else _home_or_none()
    if home is None:
        return None
    return home / "Documents"


def resolve_windows_data_root(content: str, documents_dir: Optional[Path]) -> Optional[Path]:
    """Interpret the data-root line of a config *.ini file.

    The literal token ``MyDocument:`` (optionally with a trailing slash) stands
    for the user's Documents folder, given as `documents_dir`; anything else is
    taken as a path.
    """
    trimmed = content.strip()
    stripped = trimmed[:-1] if trimmed.endswith(("\\", "/")) else trimmed
    if stripped.lower() == "mydocument:":
        if documents_dir is None or str(documents_dir) == "":
            return None
        return Path(documents_dir)
    return Path(trimmed)


def _detect_windows() -> Optional[Path]:
    appdata = os.environ.get("APPDATA")
    if appdata is None:
        return None
    config_dir = Path(appdata) / "Tencent/xwechat/config"
    if not config_dir.exists():
        return None
    try:
        entries = list(config_dir.iterdir())
    except OSError:
        return None
    candidates: list[Path] = []
    documents = _known_documents_dir()
    for path in entries:
        if path.suffix != ".ini":
            continue
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            continue
        data_root = resolve_windows_data_root(content.strip(), documents)
        if data_root is None or not data_root.is_dir():
            continue
        candidates.extend(_storage_dirs_under(data_root / "xwechat_files"))
    return _newest(candidates, _latest_db_key)