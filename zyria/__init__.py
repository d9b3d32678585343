import logging
import os
from pathlib import Path

from dotenv import load_dotenv

# api, worker and scripts all resolve .env from the repo root, not the CWD
load_dotenv(dotenv_path=Path(__file__).resolve().parent.parent / ".env", override=False)

from . import storage  # noqa: E402

_LOG_FILE = os.getenv("ZYRIA_LOG_FILE", "zyria.log")

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.FileHandler(_LOG_FILE, encoding="utf-8"), logging.StreamHandler()]
)

storage.init_db()

DOC_ROOT = Path(os.getenv("ZYRIA_DOCS_ROOT") or (Path(__file__).resolve().parent.parent / "docs"))
DOC_ROOT.mkdir(parents=True, exist_ok=True)
