import logging
import threading
import time

import pytest

import ober
from ober_handler import access_logger


@pytest.fixture(autouse=True)
def reset_access_logger():
    yield
    for handler in list(access_logger.handlers):
        access_logger.removeHandler(handler)
    access_logger.propagate = True
    access_logger.setLevel(logging.NOTSET)


@pytest.fixture
def site(tmp_path):
    (tmp_path / "index.html").write_bytes(b"<h1>hello ober</h1>\n")
    (tmp_path / "data.bin").write_bytes(bytes(range(256)))
    sub = tmp_path / "docs"
    sub.mkdir()
    (sub / "readme.txt").write_text("nested file\n")
    return tmp_path


@pytest.fixture
def running_server(site):
    config = ober.ServerConfig(address="127.0.0.1", port=0, root=str(site))
    httpd = ober.make_server(config, 0)
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{httpd.server_address[1]}"
    httpd.shutdown()
    httpd.server_close()
    thread.join(timeout=5)


@pytest.fixture
def access_lines(caplog):
    caplog.set_level(logging.INFO, logger="ober.access")

    def wait_for(count, timeout=5.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            lines = [r.getMessage() for r in caplog.records if r.name == "ober.access"]
            if len(lines) >= count:
                return lines
            time.sleep(0.01)
        return [r.getMessage() for r in caplog.records if r.name == "ober.access"]

    return wait_for
