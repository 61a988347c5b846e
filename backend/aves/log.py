import logging

from .settings import settings

_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def setup_logging() -> None:
	root = logging.getLogger()
	if not any(getattr(h, "_aves", False) for h in root.handlers):
		handler = logging.StreamHandler()
		handler.setFormatter(logging.Formatter(_FORMAT))
		handler._aves = True
		root.addHandler(handler)
	root.setLevel(settings.log_level.upper())
	# passlib warns about the bcrypt version check on every import
	logging.getLogger("passlib").setLevel(logging.ERROR)
	logging.getLogger("httpx").setLevel(logging.WARNING)
