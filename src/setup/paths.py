import os
from pathlib import Path

PARENT_DIR = Path(".").resolve()
LOGS_DIR = PARENT_DIR/"logs"


def make_fundamental_paths():
    
    for folder in [LOGS_DIR]:
        if not Path(folder).exists():
            os.mkdir(folder)
