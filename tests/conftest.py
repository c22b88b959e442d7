import sys
from pathlib import Path
import pytest

# Ensure project root is on sys.path so tests can import the `semantle` package
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True)
def reset_module_state():
	# Clear in-memory rate limiter and caches between tests to avoid cross-test flakiness
	import semantle.main as main
	from semantle import deps
	from semantle.cache import get_cache

	main._RATE_LIMIT_STORE.clear()
	get_cache().clear()
	yield
	deps.registry = None
	get_cache().clear()
