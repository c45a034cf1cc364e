import datetime
import json
import logging
import os
import tempfile

from param import REPORT_FOLDER_PREFIX


def create_report_folder(parent=".", now=None):
    """Create the timestamped folder that holds one audit run's output."""
    now = now or datetime.datetime.now()
    folder = os.path.join(parent, REPORT_FOLDER_PREFIX + now.strftime("%Y_%m_%d_%H_%M_%S"))
    os.makedirs(folder, exist_ok=False)
    logging.info("Created report folder %s", folder)
    return folder


def snapshot_path(folder, ip, index, source_count):
    # Multi-source devices get a 1-based _n suffix per video source
    if source_count == 1:
        return os.path.join(folder, f"snapshot_{ip}.jpg")
    return os.path.join(folder, f"snapshot_{ip}_{index + 1}.jpg")


def report_path(folder, ip, extension="txt"):
    return os.path.join(folder, f"camera_report_{ip}.{extension}")


def _atomic_write(path, data, mode):
    # Unique temp name: the same address may be audited more than once per run
    folder, name = os.path.split(path)
    fd, tmp_path = tempfile.mkstemp(prefix=f".{name}.", suffix=".tmp", dir=folder or ".")
    encoding = None if "b" in mode else "utf-8"
    newline = None if "b" in mode else ""
    try:
        with open(fd, mode, encoding=encoding, newline=newline) as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except Exception:
        try:
            os.remove(tmp_path)
        except OSError:
            pass
        raise


def save_snapshot(path, content):
    _atomic_write(path, content, "wb")
    logging.debug("Saved snapshot %s (%d bytes)", path, len(content))


def save_text_report(path, text):
    _atomic_write(path, text, "w")


def save_json_report(path, data):
    _atomic_write(path, json.dumps(data, indent=2, ensure_ascii=False, default=str), "w")
