# services/__init__.py

# This file makes the 'services' directory a Python package and
# exposes its modules for import.

from . import sync_tracker
from . import sync_runner
from . import webhook_resync
