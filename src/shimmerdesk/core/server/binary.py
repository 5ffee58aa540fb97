"""
Server binary location and command-line construction.

Bundled binaries live under a resources root, one per platform/arch pair:

    <resources>/shimmy/<platform>/<arch>/shimmy[.exe]

Platform and arch use the names the desktop packaging emits
(``darwin``/``linux``/``win32`` and ``x64``/``arm64``/``ia32``), so a
resources tree built for the desktop app can be reused unchanged.
"""

from __future__ import annotations

import platform
import sys
from pathlib import Path

from shimmerdesk.core.config import ServerConfig
from shimmerdesk.core.constants import RESOURCES_DIR_NAME, SERVER_BINARY_NAME

_ARCH_ALIASES = {
    "x86_64": "x64",
    "amd64": "x64",
    "x64": "x64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "i386": "ia32",
    "i686": "ia32",
    "x86": "ia32",
    "armv7l": "arm",
}


def platform_name() -> str:
    if sys.platform == "win32":
        return "win32"
    if sys.platform == "darwin":
        return "darwin"
    if sys.platform.startswith("linux"):
        return "linux"
    return sys.platform


def arch_name() -> str:
    machine = platform.machine().lower()
    return _ARCH_ALIASES.get(machine, machine)


class BinaryResolver:
    """Maps the running platform to the server executable path."""

    def __init__(self, resources_dir: Path | str | None = None, binary_path: str = "") -> None:
        self._resources_dir = Path(resources_dir) if resources_dir else Path.cwd() / RESOURCES_DIR_NAME
        self._override = binary_path

    @property
    def resources_dir(self) -> Path:
        return self._resources_dir

    def resolve(self) -> Path:
        if self._override:
            return Path(self._override).expanduser()
        name = SERVER_BINARY_NAME + (".exe" if sys.platform == "win32" else "")
        return self._resources_dir / SERVER_BINARY_NAME / platform_name() / arch_name() / name

    def exists(self) -> bool:
        return self.resolve().is_file()


def _num(value: float) -> str:
    # 0.7 -> "0.7", 1.0 -> "1"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def build_server_args(config: ServerConfig) -> list[str]:
    """Translate *config* into the server's ``serve`` command line (program name excluded)."""
    args = ["serve", "--host", config.host, "--port", str(config.port)]

    if config.model_path:
        args += ["--model", config.model_path]
    if config.context_size:
        args += ["--ctx-size", str(config.context_size)]
    if config.batch_size:
        args += ["--batch-size", str(config.batch_size)]
    if config.gpu_layers is not None:
        args += ["--n-gpu-layers", str(config.gpu_layers)]

    if config.temperature is not None:
        args += ["--temp", _num(config.temperature)]
    if config.top_p is not None:
        args += ["--top-p", _num(config.top_p)]
    if config.top_k is not None:
        args += ["--top-k", str(config.top_k)]
    if config.repeat_penalty is not None:
        args += ["--repeat-penalty", _num(config.repeat_penalty)]

    args += config.additional_args
    return args


def build_server_env(config: ServerConfig) -> dict[str, str]:
    """Extra environment for the server child, layered over ``os.environ``."""
    return {
        **config.env,
        "SHIMMY_HOST": config.host,
        "SHIMMY_PORT": str(config.port),
    }
