# Utils.py
#########################################
# General Utilities Library
# This library is used to hold small utilities shared by the archiver libraries.
#
####
####################
# Function Categories
#
#     Logging Setup
#     Time Functions
#     Hashing/Verification Functions
#     Sanitization Functions
#     File Handling Functions
#
####################
# Function List
#
# 1. setup_logging(level, log_file=None)
# 2. get_current_utc_timestamp_iso()
# 3. parse_timestamp(ts_str)
# 4. to_utc_iso(value)
# 5. compute_sha256(file_path)
# 6. sanitize_filename(filename)
# 7. normalize_extension(ext)
# 8. extension_from_url(url)
# 9. ensure_directory_exists(path)
#
####################
#
# Import necessary libraries
import hashlib
import os
import re
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union
#
# 3rd-Party Imports
from loguru import logger
#
#######################################################################################################################
#
# Function Definitions

HASH_BLOCK_SIZE = 65536

_LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)


#######################################################################################################################
#
# Logging Setup

def setup_logging(level: str = "INFO", log_file: Optional[Union[str, Path]] = None) -> None:
    """
    Replace loguru's default sink with a stderr sink at `level`, plus an optional rotating file sink.
    """
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=_LOG_FORMAT)
    if log_file:
        logger.add(str(log_file), level="DEBUG", rotation="10 MB", retention=5, enqueue=True)
    logger.debug(f"Logging configured (level={level}, file={log_file})")

#
# End of Logging Setup
#######################################################################################################################


#######################################################################################################################
#
# Time Functions

def get_current_utc_timestamp_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def parse_timestamp(ts_str: Optional[str]) -> Optional[datetime]:
    """Parse a stored ISO timestamp (``Z`` or offset suffix) into an aware UTC datetime."""
    if not ts_str:
        return None
    try:
        dt = datetime.fromisoformat(ts_str.replace('Z', '+00:00'))
    except ValueError:
        logger.warning(f"Could not parse timestamp string: {ts_str}")
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_utc_iso(value: Optional[Union[str, datetime]]) -> Optional[str]:
    """Canonicalize a remote timestamp (any offset) to the stored UTC form."""
    if value is None:
        return None
    dt = parse_timestamp(value) if isinstance(value, str) else value
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')

#
# End of Time Functions
#######################################################################################################################


#######################################################################################################################
#
# Hashing/Verification Functions

def compute_sha256(file_path: Union[str, Path]) -> str:
    sha256_hash = hashlib.sha256()
    with open(file_path, 'rb') as f:
        for byte_block in iter(lambda: f.read(HASH_BLOCK_SIZE), b''):
            sha256_hash.update(byte_block)
    return sha256_hash.hexdigest()


#
# End of Hashing/Verification Functions
#######################################################################################################################


#######################################################################################################################
#
# Sanitization Functions

def sanitize_filename(filename: str) -> str:
    """
    Sanitizes a filename component by:
      1) Removing forbidden characters entirely
      2) Collapsing consecutive whitespace into a single space
      3) Collapsing consecutive dashes into a single dash
    """
    sanitized = re.sub(r'[<>:"/\\|?*\x00-\x1f]', '', filename)
    sanitized = re.sub(r'\s+', ' ', sanitized).strip()
    sanitized = re.sub(r'-{2,}', '-', sanitized)
    return sanitized


def normalize_extension(ext: Optional[str]) -> str:
    """Return an extension without its leading dot, lower-cased; empty string when unknown."""
    if not ext:
        return ""
    return ext.lstrip('.').lower()


def extension_from_url(url: str) -> str:
    path = url.split('?', 1)[0].split('#', 1)[0]
    _, ext = os.path.splitext(path)
    return normalize_extension(ext)

#
# End of Sanitization Functions
#######################################################################################################################


#######################################################################################################################
#
# File Handling Functions

def ensure_directory_exists(path: Union[str, Path]) -> Path:
    path = Path(path)
    if not path.exists():
        path.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Created directory: {path}")
    return path

#
# End of File Handling Functions
#######################################################################################################################
