# services/text_decoder.py
import logging

logger = logging.getLogger(__name__)

REPLACEMENT_CHAR = "\ufffd"
BOM = "\ufeff"

# More replacement characters than this and the file is assumed to be cp1251.
MAX_REPLACEMENTS = 5


def read_file_smart(buffer: bytes) -> str:
    """
    Decode an uploaded file as text.

    UTF-8 first; if that produces more than MAX_REPLACEMENTS replacement
    characters the same bytes are decoded as Windows-1251 instead. A leading
    byte-order mark is stripped. Never raises on bad input.

    :param buffer: Raw file contents.
    :return: Decoded text.
    """
    if not buffer:
        return ""

    text = bytes(buffer).decode("utf-8", errors="replace")
    bad = text.count(REPLACEMENT_CHAR)

    if bad > MAX_REPLACEMENTS:
        logger.info(f"UTF-8 decode produced {bad} replacement characters, retrying as cp1251")
        # cp1251 leaves 0x98 unassigned; it comes through as a replacement character
        text = bytes(buffer).decode("cp1251", errors="replace")

    if text.startswith(BOM):
        text = text[1:]
    return text
