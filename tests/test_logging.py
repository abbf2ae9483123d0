import logging

import pytest

from axconfig.logging import configure_logging


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    names = ("axconfig.executor", "axconfig.adapters", "usb", "serial", "aiohttp.access")
    levels = {name: logging.getLogger(name).level for name in names}
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
        if handler not in handlers:
            handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)
    for name, value in levels.items():
        logging.getLogger(name).setLevel(value)


def test_quiet_libraries_by_default(restore_root_logging) -> None:
    configure_logging("INFO")

    assert logging.getLogger().level == logging.INFO
    assert logging.getLogger("usb").level == logging.WARNING
    assert logging.getLogger("serial").level == logging.WARNING


def test_transport_tracing_passes_wire_records_only(restore_root_logging, tmp_path) -> None:
    log_path = tmp_path / "logs" / "axconfig.log"

    configure_logging("WARNING", log_path=log_path, log_transport=True)
    logging.getLogger("axconfig.executor").debug(">>> ID")
    logging.getLogger("axconfig.device").debug("not shown")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert logging.getLogger("axconfig.executor").isEnabledFor(logging.DEBUG)
    assert log_path.exists()
    wire_handlers = [
        handler
        for handler in logging.getLogger().handlers
        if any(type(f).__name__ == "_WireFilter" for f in handler.filters)
    ]
    assert len(wire_handlers) == 1
    record = logging.LogRecord("axconfig.executor", logging.DEBUG, "", 0, ">>> ID", None, None)
    other = logging.LogRecord("axconfig.device", logging.DEBUG, "", 0, "state", None, None)
    assert wire_handlers[0].filter(record)
    assert not wire_handlers[0].filter(other)
