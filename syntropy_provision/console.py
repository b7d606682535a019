"""
Operator console output and logging setup.

Console helpers print colored, emoji-prefixed lines for the operator; the
logging setup sends the full record of a run (including every command that was
executed) to a log file under the state directory.
"""

import logging
import sys
from pathlib import Path
from typing import Optional


class Colors:
    """Color constants for terminal output"""
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    MAGENTA = '\033[95m'
    GRAY = '\033[90m'
    WHITE = '\033[97m'
    RESET = '\033[0m'


LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def _use_color(stream) -> bool:
    return hasattr(stream, 'isatty') and stream.isatty()


def write_colored_output(message: str, color: str = Colors.WHITE, stream=None) -> None:
    """Write colored output to console"""
    stream = stream or sys.stdout
    if _use_color(stream):
        print(f"{color}{message}{Colors.RESET}", file=stream)
    else:
        print(message, file=stream)


def write_info(message: str) -> None:
    """Write info message with cyan color"""
    write_colored_output(f"ℹ️  {message}", Colors.CYAN)


def write_success(message: str) -> None:
    """Write success message with green color"""
    write_colored_output(f"✅ {message}", Colors.GREEN)


def write_warning(message: str) -> None:
    """Write warning message with yellow color"""
    write_colored_output(f"⚠️  {message}", Colors.YELLOW, stream=sys.stderr)


def write_error(message: str) -> None:
    """Write error message with red color"""
    write_colored_output(f"❌ {message}", Colors.RED, stream=sys.stderr)


def write_phase(index: int, total: int, name: str) -> None:
    """Write a pipeline phase header"""
    write_colored_output(f"[{index}/{total}] {name}", Colors.MAGENTA)


def format_size(size_bytes: int) -> str:
    """Format a byte count as a short human readable string"""
    unit = 1024
    if size_bytes < unit:
        return f"{size_bytes} B"
    value = float(size_bytes)
    for suffix in ('KB', 'MB', 'GB', 'TB'):
        value /= unit
        if value < unit or suffix == 'TB':
            return f"{value:.1f} {suffix}"
    return f"{size_bytes} B"


def confirm_interactive(prompt: str) -> bool:
    """Ask the operator a yes/no question; anything but yes is a no"""
    write_colored_output(prompt, Colors.YELLOW)
    try:
        answer = input('Continue? (y/N): ').strip().lower()
    except EOFError:
        return False
    return answer in ('y', 'yes')


def setup_logging(log_dir: Path, level: str = 'INFO', verbose: bool = False) -> logging.Logger:
    """Setup logging configuration"""
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / 'syntropy.log'
    log_file.touch()
    log_file.chmod(0o600)

    handlers = [logging.FileHandler(log_file)]
    if verbose:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
        handlers.append(console_handler)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        handlers=handlers,
        force=True,
    )
    return logging.getLogger('syntropy_provision')


def log_file_path(log_dir: Optional[Path]) -> Optional[Path]:
    if log_dir is None:
        return None
    return log_dir / 'syntropy.log'
