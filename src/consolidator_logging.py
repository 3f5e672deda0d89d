import logging
import sys
import tempfile

log_path = ""


def setup_logging(verbose: bool = False) -> str:
    """Send all records to a temporary log file and INFO (or DEBUG) to stdout."""
    global log_path
    root = logging.getLogger()
    # Avoid duplicate handlers if called more than once
    if log_path:
        return log_path

    # Create a temporary file
    with tempfile.NamedTemporaryFile(delete=False, mode="w", suffix=".log") as tmp:
        log_path = tmp.name

    root.setLevel(logging.DEBUG)
    file_handler = logging.FileHandler(log_path)
    file_handler.setFormatter(logging.Formatter('[%(asctime)s]\t %(levelname)s - %(message)s'))
    file_handler.setLevel(logging.DEBUG)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter('%(levelname)s : %(message)s'))
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    root.addHandler(file_handler)
    root.addHandler(console_handler)
    return log_path


def get_log_path():
    return log_path
