"""Host clipboard access."""

import pyperclip
import structlog

log = structlog.get_logger()


def copy_text(text: str) -> bool:
    """Copy text to the system clipboard.

    Returns:
        True if the clipboard accepted the text
    """
    try:
        pyperclip.copy(text)
    except pyperclip.PyperclipException as e:
        log.warning("clipboard_unavailable", error=str(e))
        return False
    log.debug("clipboard_copied", chars=len(text))
    return True
