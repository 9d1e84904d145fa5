# playsync/utils/logging.py

import logging
from datetime import datetime

from colorama import Fore, Style

_logger = logging.getLogger("playsync")


def timestamp() -> str:
    return f"[{datetime.now():%Y-%m-%d %H:%M:%S}]"


def _emit(level: int, label: str, color: str, msg: str) -> None:
    print(color + f"{timestamp()} [{label}] {msg}" + Style.RESET_ALL)
    _logger.log(level, msg)


def log_info(msg: str):
    _emit(logging.INFO, "INFO", Fore.CYAN, msg)


def log_success(msg: str):
    _emit(logging.INFO, "SUCCESS", Fore.GREEN, msg)


def log_warning(msg: str):
    _emit(logging.WARNING, "WARNING", Fore.YELLOW, msg)


def log_error(msg: str):
    _emit(logging.ERROR, "ERROR", Fore.RED, msg)
