import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
BACKEND_PATH = str(BACKEND_ROOT)
if BACKEND_PATH not in sys.path:
    sys.path.insert(0, BACKEND_PATH)


@pytest.fixture(autouse=True)
def _reset_installed_services():
    from soc_chat_backend.services import install_services

    yield
    install_services(None)
