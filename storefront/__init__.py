import os
from pathlib import Path


def _strip_quotes(val: str) -> str:
	if len(val) >= 2 and val[0] == val[-1] and val[0] in {'"', "'"}:
		return val[1:-1]
	return val


def load_dotenv_if_needed(env_path: Path = Path(".env")) -> int:
	"""Copy KEY=VALUE lines from a local .env into os.environ.

	Existing variables win. Returns how many keys were set. Skipped under pytest so
	provider credentials never leak into tests.
	"""
	if os.getenv("PYTEST_CURRENT_TEST"):
		return 0
	if not env_path.exists():
		return 0
	loaded = 0
	try:
		lines = env_path.read_text(encoding="utf-8").splitlines()
	except OSError:
		return 0
	for line in lines:
		s = line.strip()
		if not s or s.startswith("#") or "=" not in s:
			continue
		key, val = s.split("=", 1)
		key = key.strip()
		if key.startswith("export "):
			key = key[len("export "):].strip()
		if key and key not in os.environ:
			os.environ[key] = _strip_quotes(val.strip())
			loaded += 1
	return loaded


load_dotenv_if_needed()
