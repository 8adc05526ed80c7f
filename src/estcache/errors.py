class EstcacheError(Exception):
    """
    base class of every error raised by estcache.
    """


class MalformedRecordError(EstcacheError, ValueError):
    """
    MalformedRecordError: Is raised when a segment of a cache
    stream cannot be decoded into a record. A read that hits
    it returns nothing at all.
    """

    def __init__(
        self,
        reason: "str",
        line: "int | None" = None,
        offset: "int | None" = None,
    ) -> "None":
        self.reason = reason
        self.line = line
        self.offset = offset
        location = ""
        if line is not None:
            location = f" at line {line}"
            if offset is not None:
                location += f", offset {offset}"
        super().__init__(f"malformed cache record{location}: {reason}")


class StreamIOError(EstcacheError, OSError):
    """
    StreamIOError: Is raised when the source or sink behind a
    cache stream fails or ends before the closing bracket.
    """
