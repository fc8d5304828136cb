# carecore_cli/core/session.py
import json
import os
from typing import Optional

from . import config


def save_tokens(access_token: str, refresh_token: Optional[str] = None) -> None:
    """
    Stores the token pair in the session file, readable by the owner only.
    """
    config.APP_DIR.mkdir(parents=True, exist_ok=True)
    data = {"access_token": access_token, "refresh_token": refresh_token}
    # Write then rename so concurrent readers never see a half written file
    tmp_file = config.SESSION_FILE.with_suffix(".tmp")
    with open(tmp_file, "w", encoding="utf-8") as f:
        json.dump(data, f)
    os.chmod(tmp_file, 0o600)
    os.replace(tmp_file, config.SESSION_FILE)


def load_session() -> Optional[dict]:
    """
    Returns the stored session, or None when there is none or it is unreadable.
    """
    if not config.SESSION_FILE.exists():
        return None
    try:
        with open(config.SESSION_FILE, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError):
        # A corrupt session file is treated as no session
        return None
    if not isinstance(data, dict) or not data.get("access_token"):
        return None
    return data


def load_token() -> Optional[str]:
    session = load_session()
    return session["access_token"] if session else None


def load_refresh_token() -> Optional[str]:
    session = load_session()
    return session.get("refresh_token") if session else None


def clear_session() -> None:
    """
    Deletes the session file, ending the local session.
    """
    if config.SESSION_FILE.exists():
        config.SESSION_FILE.unlink()


def is_logged_in() -> bool:
    return load_token() is not None
