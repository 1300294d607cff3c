import sys
from pathlib import Path

# make sure config.py at the project root is importable
BASE_DIR = Path(__file__).resolve().parent
sys.path.insert(0, str(BASE_DIR))

from hitcounter import create_app

app = create_app()
