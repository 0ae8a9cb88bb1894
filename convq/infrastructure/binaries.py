"""Locates the encoder/prober executables.

Bundled binaries follow a target-triple naming convention
(``ffmpeg-x86_64-unknown-linux-gnu``, ``ffprobe-aarch64-apple-darwin``,
``ffmpeg-x86_64-pc-windows-msvc.exe``). Lookup order for a tool is:

1. an explicit path from config,
2. ``<binaries_dir>/<tool>-<triple><ext>``,
3. ``<binaries_dir>/<tool><ext>``,
4. the system PATH.
"""

import logging
import platform
import shutil
import sys
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

_ARCH_ALIASES = {
    "amd64": "x86_64",
    "x64": "x86_64",
    "x86_64": "x86_64",
    "arm64": "aarch64",
    "aarch64": "aarch64",
    "i386": "i686",
    "i686": "i686",
    "x86": "i686",
}


def target_triple(system: Optional[str] = None, machine: Optional[str] = None) -> str:
    """Platform/architecture qualifier used in bundled binary names."""
    system = (system or platform.system()).lower()
    machine = (machine or platform.machine()).lower()
    arch = _ARCH_ALIASES.get(machine, machine)

    if system == "darwin":
        return f"{arch}-apple-darwin"
    if system == "windows":
        return f"{arch}-pc-windows-msvc"
    return f"{arch}-unknown-linux-gnu"


def executable_suffix(system: Optional[str] = None) -> str:
    system = (system or platform.system()).lower()
    return ".exe" if system == "windows" else ""


def locate_binary(
    tool: str,
    explicit_path: Optional[str] = None,
    binaries_dir: Optional[Path] = None,
) -> Optional[Path]:
    """Resolve ``tool`` to an executable path, or None when nothing is found.

    A missing binary is not an error here: launching it surfaces a SpawnError
    per job, and probing surfaces a ProbeError.
    """
    if explicit_path:
        return Path(explicit_path)

    suffix = executable_suffix()
    if binaries_dir is not None:
        candidates = [
            binaries_dir / f"{tool}-{target_triple()}{suffix}",
            binaries_dir / f"{tool}{suffix}",
        ]
        for candidate in candidates:
            if candidate.is_file():
                logger.debug(f"BINARY_FOUND: {tool} -> {candidate}")
                return candidate

    system_path = shutil.which(tool)
    if system_path:
        return Path(system_path)

    logger.warning(f"BINARY_MISSING: {tool} (platform={sys.platform}, triple={target_triple()})")
    return None


def resolve_tool(tool: str, explicit_path: Optional[str] = None, binaries_dir: Optional[Path] = None) -> str:
    """Like locate_binary, but falls back to the bare tool name for spawning."""
    found = locate_binary(tool, explicit_path=explicit_path, binaries_dir=binaries_dir)
    return str(found) if found else tool
