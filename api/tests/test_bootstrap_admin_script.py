from __future__ import annotations

import subprocess
import sys
from pathlib import Path


SCRIPT_PATH = Path(__file__).resolve().parents[2] / "scripts" / "bootstrap_admin.py"


def _run_script(*args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [sys.executable, str(SCRIPT_PATH), *args],
        check=False,
        capture_output=True,
        text=True,
    )


def test_bootstrap_script_emits_sql_for_user_id_target() -> None:
    user_id = "00000000-0000-0000-0000-000000000123"
    completed = _run_script("--user-id", user_id, "--role", "requester")

    assert completed.returncode == 0
    output = completed.stdout
    assert "update auth.users" in output
    assert f"where id = '{user_id}'::uuid;" in output
    assert "jsonb_build_object('role', 'requester')" in output
    assert "raw_user_meta_data" not in output


def test_bootstrap_script_emits_sql_for_email_target_with_display_name() -> None:
    completed = _run_script("--email", "o'neil@example.edu", "--display-name", "Pat O'Neil")

    assert completed.returncode == 0
    output = completed.stdout
    assert "where email = 'o''neil@example.edu';" in output
    assert "jsonb_build_object('role', 'admin')" in output
    assert "jsonb_build_object('full_name', 'Pat O''Neil')" in output
    assert "raw_app_meta_data ->> 'role' as role" in output


def test_bootstrap_script_rejects_unknown_role() -> None:
    completed = _run_script("--email", "admin@example.edu", "--role", "moderator")

    assert completed.returncode != 0
    assert "invalid choice" in completed.stderr
