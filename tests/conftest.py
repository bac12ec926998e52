import os
import sys
import tempfile
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

# The app module loads its config and opens its request log at import time;
# keep both out of the working tree for the whole session.
_SESSION_DIR = Path(tempfile.mkdtemp(prefix="chat_relay_tests_"))
os.environ.setdefault("CHAT_RELAY_CONFIG_FILE", str(_SESSION_DIR / "chat_relay.toml"))
os.environ.setdefault("CHAT_RELAY_LOG_PATH", str(_SESSION_DIR / "chat_relay.jsonl"))
