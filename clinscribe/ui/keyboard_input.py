"""Cross-platform single-key input for the terminal UI."""

import sys
import threading
import time
from typing import Optional, Callable
import logging

logger = logging.getLogger(__name__)

if sys.platform == "win32":
    import msvcrt
else:
    import select
    import termios
    import tty


class KeyboardInputHandler:
    """Reads single key presses on a background thread.

    The callback receives the lower-cased key and returns False to stop
    listening (e.g. on quit).
    """

    def __init__(self, callback: Callable[[str], bool]):
        self.callback = callback
        self.running = False
        self.thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self.running:
            return

        self.running = True
        self.thread = threading.Thread(target=self._input_loop, daemon=True)
        self.thread.name = "KeyboardInputThread"
        self.thread.start()
        logger.info("Keyboard input handler started")

    def stop(self) -> None:
        self.running = False
        if self.thread and self.thread is not threading.current_thread():
            self.thread.join(timeout=1.0)
        logger.info("Keyboard input handler stopped")

    def _input_loop(self) -> None:
        while self.running:
            key = self._get_key()
            if key:
                logger.debug(f"Key detected: {key!r}")
                if not self.callback(key):
                    break
            time.sleep(0.05)
        self.running = False
        logger.info("Keyboard input loop ended")

    def _get_key(self) -> Optional[str]:
        if sys.platform == "win32":
            if msvcrt.kbhit():
                return msvcrt.getch().decode('utf-8', errors='ignore').lower()
            return None

        # Poll so the loop can notice stop() without a key press.
        if not select.select([sys.stdin], [], [], 0.1)[0]:
            return None
        old_settings = termios.tcgetattr(sys.stdin)
        try:
            tty.setraw(sys.stdin.fileno())
            return sys.stdin.read(1).lower()
        finally:
            termios.tcsetattr(sys.stdin, termios.TCSADRAIN, old_settings)


class LineInputHandler(KeyboardInputHandler):
    """Line-based fallback for terminals without raw mode (pipes, IDE consoles)."""

    def _get_key(self) -> Optional[str]:
        try:
            line = input("(enter)=start/stop, r=reset, g=regenerate note, q=quit > ")
        except EOFError:
            return "q"
        line = line.strip().lower()
        return line[0] if line else " "


def create_input_handler(callback: Callable[[str], bool]) -> KeyboardInputHandler:
    """Pick the raw key handler on a real terminal, the line handler otherwise."""
    if sys.stdin.isatty():
        return KeyboardInputHandler(callback)
    logger.warning("stdin is not a terminal, falling back to line input")
    return LineInputHandler(callback)
