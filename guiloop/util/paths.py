import os
from pathlib import Path

RUN_DIR = Path(os.getenv("GUILOOP_RUN_DIR", "/run/guiloop"))
LATEST_JPG = RUN_DIR / "latest.jpg"
LAST_SENT_JPG = RUN_DIR / "last_sent.jpg"

STOP_FILE = Path("/tmp/guiloop.stop")
