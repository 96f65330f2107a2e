
import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    # uvicorn --reload re-imports the app; keep a single handler
    if any(getattr(h, "_iot_dashboard", False) for h in root.handlers):
        root.setLevel(level)
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._iot_dashboard = True
    root.addHandler(handler)
    root.setLevel(level)
    # pymongo heartbeats are noisy at DEBUG
    logging.getLogger("pymongo").setLevel(logging.WARNING)
