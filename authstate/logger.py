import logging, json, sys, time, os

ROOT = "authstate"


class JsonFormatter(logging.Formatter):
    """One JSON object per record: ts, level, name, msg (and exc when present)."""

    converter = time.gmtime  # UTC timestamps

    def __init__(self, datefmt="%Y-%m-%dT%H:%M:%SZ"):
        super().__init__(datefmt=datefmt)

    def format(self, record):
        payload = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def get_logger(name=ROOT, level=logging.INFO, to_file=None):
    """Structured JSON logger; handlers are attached once per name."""
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if not logger.handlers:
        formatter = JsonFormatter()
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

        if to_file:
            dir_path = os.path.dirname(to_file)
            if dir_path:
                os.makedirs(dir_path, exist_ok=True)
            file_handler = logging.FileHandler(to_file)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    return logger


def child_logger(component):
    # components carry no handlers of their own; records go out through the package logger
    get_logger(ROOT)
    return logging.getLogger(f"{ROOT}.{component}")
