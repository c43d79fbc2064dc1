import logging
import string
import subprocess

from check_errors import EscapeFailed

logger = logging.getLogger(__name__)

# Bytes kept as-is in an escaped component. Everything else becomes \xHH.
VALID_CHARS = frozenset(string.ascii_letters + string.digits + "_.")


def _escape_component(component):
    escaped = []
    for i, byte in enumerate(component.encode("utf-8")):
        char = chr(byte)
        # a leading dot would produce a hidden unit name
        if char in VALID_CHARS and not (i == 0 and char == "."):
            escaped.append(char)
        else:
            escaped.append("\\x%02x" % byte)
    return "".join(escaped)


def escape_path(path):
    """Escape an absolute path into a unit-name-safe string.

    Each non-empty path component is escaped on its own and the results are
    joined with "-", so "/var/lib/my-dir" becomes "var-lib-my\\x2ddir".
    The root path escapes to "-".
    """
    if not isinstance(path, str):
        raise EscapeFailed(f"cannot escape path of type {type(path).__name__}")
    if "\x00" in path:
        raise EscapeFailed(f"path {path!r} contains a NUL byte")

    components = []
    for component in path.split("/"):
        if component in ("", "."):
            continue
        if component == "..":
            raise EscapeFailed(f"path {path!r} is not normalized")
        try:
            components.append(_escape_component(component))
        except UnicodeEncodeError as e:
            raise EscapeFailed(f"path {path!r} is not valid UTF-8: {e}") from e
    if not components:
        return "-"
    return "-".join(components)


class InProcessEscaper:
    """Pure Python escaping, needs no external tool."""

    def escape(self, path):
        escaped = escape_path(path)
        logger.debug(f"path {path!r} escaped to {escaped!r} ({len(escaped)})")
        return escaped


class SystemdEscaper:
    """Escaping by running the systemd-escape utility."""

    def __init__(self, binary="systemd-escape", timeout=10):
        self.binary = binary
        self.timeout = timeout

    def escape(self, path):
        try:
            result = subprocess.run(
                [self.binary, "--path", path],
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        # ValueError covers arguments that cannot be passed to exec
        except (OSError, subprocess.SubprocessError, ValueError) as e:
            raise EscapeFailed(f"{self.binary}: {e}") from e
        if result.returncode != 0:
            output = (result.stdout + result.stderr).strip()
            raise EscapeFailed(f"{self.binary}: exit status {result.returncode}: {output}")
        escaped = result.stdout.strip()
        logger.debug(f"path {path!r} systemd-escaped to {escaped!r} ({len(escaped)})")
        return escaped


def default_escaper():
    return InProcessEscaper()
