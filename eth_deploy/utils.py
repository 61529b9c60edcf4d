"""Bunch of random utilities."""

import logging
import os
from pathlib import Path

import coloredlogs
from eth_typing import HexAddress, HexStr
from web3 import Web3

logger = logging.getLogger(__name__)


def setup_console_logging(
    default_log_level="warning",
    log_file: Path | None = None,
) -> logging.Logger:
    """Set up coloured log output for scripts.

    - Level comes from ``LOG_LEVEL`` environment variable
    - Tune down some noisy dependency library logging

    :param log_file:
        Also write the log to this file, always at least INFO level

    :return:
        Root logger
    """

    level = os.environ.get("LOG_LEVEL", default_log_level).upper()
    numeric_level = getattr(logging, level, None)
    assert numeric_level, f"No level: {level}"

    fmt = "%(asctime)s %(name)-44s %(message)s"
    date_fmt = "%H:%M:%S"

    coloredlogs.install(level=numeric_level, fmt=fmt, date_fmt=date_fmt)

    root = logging.getLogger()

    if log_file:
        assert isinstance(log_file, Path), "log_file must be a Path"
        log_file.parent.mkdir(parents=True, exist_ok=True)

        min_level = min(logging.INFO, numeric_level)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setLevel(min_level)
        file_handler.setFormatter(logging.Formatter(fmt, date_fmt))
        root.setLevel(min_level)
        root.addHandler(file_handler)

    # Mute noise
    logging.getLogger("web3.providers.HTTPProvider").setLevel(logging.WARNING)
    logging.getLogger("web3.RequestManager").setLevel(logging.WARNING)
    logging.getLogger("urllib3.connectionpool").setLevel(logging.WARNING)
    return root


def addr(address: str | HexAddress | HexStr) -> HexAddress:
    """Convert an address string of any case to a checksummed :py:class:`HexAddress`.

    :raise ValueError:
        Not an address
    """
    if not Web3.is_address(address):
        raise ValueError(f"Not an address: {address}")
    return HexAddress(Web3.to_checksum_address(address))
