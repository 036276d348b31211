from typing import Optional


def parse_status_line(line: str) -> int:
    """Return the status code of a line like ``http/1.1 200 ok``, or 0."""
    tokens = line.split()
    if len(tokens) < 2:
        return 0
    try:
        return int(tokens[1])
    except ValueError:
        return 0


def parse_content_type(value: Optional[str]) -> str:
    """Return the media type of a Content-Type value, parameters removed.

    ``"audio/x-mpegurl; charset=utf-8"`` becomes ``"audio/x-mpegurl"``.
    """
    if not value:
        return ""
    media_type, _, _ = value.partition(";")
    return media_type.strip().lower()


class HeaderParser:
    """Tracks status code and content type from raw header lines.

    Called once per header line as the transfer engine receives them. Values
    are overwritten on every redirect hop so that they describe the last
    response seen.
    """

    def __init__(self) -> None:
        self.status_code = 0
        self.content_type = ""

    def __call__(self, data: bytes) -> int:
        line = data.decode("latin-1", errors="replace").strip().lower()
        if line.startswith("http"):
            self.status_code = parse_status_line(line)
        elif line.startswith("content-type"):
            _, _, value = line.partition(":")
            self.content_type = parse_content_type(value)
        return len(data)
