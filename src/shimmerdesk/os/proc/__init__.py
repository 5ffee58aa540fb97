"""Process handle dispatch: PTY on POSIX, plain pipes on Windows."""

from __future__ import annotations

import sys

from shimmerdesk.os.proc.base import ProcessHandle


def get_shell_handle_class() -> type[ProcessHandle]:
    """Return the handle class used for interactive shell sessions."""
    if sys.platform == "win32":
        from shimmerdesk.os.proc.pipe import PipeProcessHandle

        return PipeProcessHandle
    from shimmerdesk.os.proc.pty import PtyProcessHandle

    return PtyProcessHandle
