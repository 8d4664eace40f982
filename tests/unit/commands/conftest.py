from pathlib import Path

import pytest

CONFIG = """\
[store]
directory = "state"

[logs]
directory = "logs"

[[services]]
name = "etl-stage1"
command = ["python", "stage1.py"]

[[services]]
name = "api"
command = "uvicorn app:api"
autostart = false
"""


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    path = tmp_path / "pidwarden.toml"
    _ = path.write_text(CONFIG)
    return path
