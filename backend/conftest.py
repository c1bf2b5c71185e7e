# Put 'backend/' on sys.path so 'import app.*' and 'import tests.*' resolve
# when pytest starts from the repository root.
from pathlib import Path
import sys

_BACKEND_ROOT = Path(__file__).resolve().parent
if str(_BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(_BACKEND_ROOT))
