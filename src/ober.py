import os
import sys
import socket
import logging
import argparse
import functools
import ipaddress
from dataclasses import dataclass
from typing import Optional

import yaml

from ober_handler import OberHTTPServer, OberRequestHandler, access_logger

__version__ = "0.3.0"

DEFAULT_ADDRESS = "0.0.0.0"
DEFAULT_PATH = "./"
PROBE_START = 8080
PROBE_END = 65535
CONFIG_KEYS = ("port", "address", "path", "silent", "log_level")

logger = logging.getLogger("ober")


class OberError(Exception):
    """Fatal startup condition; the process exits with status 1."""


class NoFreePortError(OberError):
    pass


class InvalidRootError(OberError):
    pass


class ConfigError(OberError):
    pass


@dataclass(frozen=True)
class ServerConfig:
    address: str = DEFAULT_ADDRESS
    port: Optional[int] = None
    root: str = DEFAULT_PATH
    silent: bool = False
    log_level: str = "INFO"


def _port_is_free(address, port):
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind((address, port))
        except OSError:
            return False
    return True


def resolve_port(address, port=None, start=PROBE_START, end=PROBE_END):
    """
    Returns the explicit port untouched, or the first port in [start, end)
    that a probe listener can bind on the given address.
    """
    if port is not None:
        return port
    for candidate in range(start, end):
        if _port_is_free(address, candidate):
            return candidate
    raise NoFreePortError(f"could not find an available port in {start}-{end - 1} on {address}")


def validate_root(path):
    if not os.path.exists(path):
        raise InvalidRootError(f"Root path {path} does not exist.")
    if not os.path.isdir(path):
        raise InvalidRootError(f"Root path {path} is not a directory.")
    if not os.access(path, os.R_OK | os.X_OK):
        raise InvalidRootError(f"Root path {path} is not readable.")
    return path


def load_config_file(path):
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping.")

    for key in data:
        if key not in CONFIG_KEYS:
            logger.warning(f"Ignoring unknown config key: {key}")
    return {k: v for k, v in data.items() if k in CONFIG_KEYS}


def _port_type(value):
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise argparse.ArgumentTypeError(f"invalid port: {value!r}")
    if not 0 < port < 65536:
        raise argparse.ArgumentTypeError(f"port out of range: {port}")
    return port


def _address_type(value):
    try:
        return str(ipaddress.IPv4Address(str(value)))
    except ipaddress.AddressValueError:
        raise argparse.ArgumentTypeError(f"invalid IPv4 address: {value!r}")


def build_parser():
    parser = argparse.ArgumentParser(
        prog="ober",
        description="a quick http server for whipping up local files.",
    )
    parser.add_argument("-p", "--port", type=_port_type,
                        help="The port files will be served on [env: OBER_PORT]")
    parser.add_argument("-a", "--address", type=_address_type,
                        help=f"The address to bind to (default: {DEFAULT_ADDRESS}) [env: OBER_ADDRESS]")
    parser.add_argument("path", nargs="?", help=f"Root folder (default: {DEFAULT_PATH})")
    parser.add_argument("-s", "--silent", action="store_true", default=None,
                        help="Suppress the startup banners")
    parser.add_argument("-c", "--config", help="YAML config file [env: OBER_CONFIG]")
    parser.add_argument("--log-level", type=str.upper,
                        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
                        help="Diagnostic log level (default: INFO) [env: OBER_LOG_LEVEL]")
    parser.add_argument("--version", action="version", version=f"ober {__version__}")
    return parser


def parse_args(argv=None, environ=None):
    environ = os.environ if environ is None else environ
    parser = build_parser()
    args = parser.parse_args(argv)

    config_path = args.config or environ.get("OBER_CONFIG")
    try:
        file_values = load_config_file(config_path) if config_path else {}
    except ConfigError as e:
        parser.error(str(e))

    def pick(cli_value, env_key, file_key, default, convert=None):
        if cli_value is not None:
            return cli_value
        raw = environ.get(env_key) if env_key else None
        if raw is None:
            raw = file_values.get(file_key)
        if raw is None:
            return default
        if convert is None:
            return raw
        try:
            return convert(raw)
        except argparse.ArgumentTypeError as e:
            source = env_key if env_key in environ else f"{file_key} in {config_path}"
            parser.error(f"{source}: {e}")

    port = pick(args.port, "OBER_PORT", "port", None, _port_type)
    address = pick(args.address, "OBER_ADDRESS", "address", DEFAULT_ADDRESS, _address_type)
    path = pick(args.path, None, "path", DEFAULT_PATH)
    silent = pick(args.silent, None, "silent", False)
    log_level = pick(args.log_level, "OBER_LOG_LEVEL", "log_level", "INFO")

    return ServerConfig(
        address=address,
        port=port,
        root=os.path.abspath(os.fspath(path)),
        silent=bool(silent),
        log_level=str(log_level).upper(),
    )


def configure_logging(level="INFO"):
    logging.basicConfig(level=getattr(logging, level, logging.INFO),
                        format='%(asctime)s - %(levelname)s - %(message)s')

    # Access lines go to stdout unadorned, one per request.
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter('%(message)s'))
    access_logger.addHandler(handler)
    access_logger.setLevel(logging.INFO)
    access_logger.propagate = False


def make_server(config, port):
    handler_cls = functools.partial(OberRequestHandler, directory=config.root)
    return OberHTTPServer((config.address, port), handler_cls)


def _print_startup_info(config):
    logger.info(f"Starting ober, serving {config.root}")
    logger.info(f"ober version: {__version__}")


def _print_available_info(config, port):
    logger.info("Available on:")
    logger.info(f"  {config.address}:{port}")
    logger.info("Hit CTRL-C to stop the server")


def serve(config):
    validate_root(config.root)
    port = resolve_port(config.address, config.port)

    if not config.silent:
        _print_startup_info(config)

    try:
        httpd = make_server(config, port)
    except OSError as e:
        raise OberError(f"Could not bind {config.address}:{port}: {e}") from e

    if not config.silent:
        _print_available_info(config, port)

    try:
        httpd.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        httpd.server_close()


def main(argv=None):
    config = parse_args(argv)
    configure_logging(config.log_level)
    try:
        serve(config)
    except OberError as e:
        logger.error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
