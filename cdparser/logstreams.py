"""Emit log records as single line JSON documents on stderr.

Callers may pass a dict as the only argument to attach structured context:

    logit.error("cannot read template", {"path": "templates/svc.yaml"})

"""

import json
import logging
import sys
from datetime import UTC, datetime

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, UTC)
        doc = {
            "time": ts.isoformat(timespec="milliseconds"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.msg if isinstance(record.args, dict) else record.getMessage(),
        }

        # Merge the structured context.
        if isinstance(record.args, dict):
            doc.update({k: v for k, v in record.args.items() if k not in doc})

        if record.exc_info:
            doc["exception"] = self.formatException(record.exc_info)
        return json.dumps(doc, default=str)


def setup(level: str) -> None:
    """Send all log messages with at least `level` severity to stderr."""
    loglevel = LEVELS.get(level.lower(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(loglevel)

    logging.getLogger("app").setLevel(loglevel)
