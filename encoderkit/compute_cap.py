"""CUDA compute capability detection and compatibility rules."""

from __future__ import annotations

import os
import re
import subprocess
from collections.abc import Mapping

_UNSIGNED = re.compile(r"\+?[0-9]+")


class ComputeCapError(Exception):
    """Raised when a compute capability cannot be determined."""


def _parse_unsigned(text: str, message: str) -> int:
    if not _UNSIGNED.fullmatch(text):
        raise ComputeCapError(f"{message}: {text!r}")
    return int(text)


def compute_cap_matching(runtime_compute_cap: int, compile_compute_cap: int) -> bool:
    """Return whether kernels built for ``compile_compute_cap`` run on ``runtime_compute_cap``."""
    runtime, compiled = runtime_compute_cap, compile_compute_cap
    if runtime == 75 and compiled == 75:
        return True
    if 80 <= runtime <= 89 and compiled == 80:
        return True
    if 86 <= runtime <= 89 and 80 <= compiled <= 86:
        return True
    if runtime == 89 and compiled == 89:
        return True
    return runtime == 90 and compiled == 90


def parse_nvidia_smi_output(text: str) -> int:
    """Parse ``nvidia-smi --query-gpu=compute_cap --format=csv`` output."""
    lines = iter(text.splitlines())
    header = next(lines, None)
    if header is None:
        raise ComputeCapError("missing line in stdout")
    if header != "compute_cap":
        raise ComputeCapError("First line should be `compute_cap`")
    value = next(lines, None)
    if value is None:
        raise ComputeCapError("missing line in stdout")
    return _parse_unsigned(value.replace(".", ""), "cannot parse as int")


def detect_compute_cap(environ: Mapping[str, str] | None = None) -> int:
    """Read ``CUDA_COMPUTE_CAP`` from the environment, else ask ``nvidia-smi``."""
    env = os.environ if environ is None else environ
    value = env.get("CUDA_COMPUTE_CAP")
    if value is not None:
        return _parse_unsigned(value, "Could not parse code")

    try:
        completed = subprocess.run(
            ["nvidia-smi", "--query-gpu=compute_cap", "--format=csv"],
            capture_output=True,
            check=False,
        )
    except OSError as err:
        raise ComputeCapError(
            "`nvidia-smi` failed. Ensure that you have CUDA installed and that "
            "`nvidia-smi` is in your PATH."
        ) from err
    try:
        text = completed.stdout.decode("utf-8")
    except UnicodeDecodeError as err:
        raise ComputeCapError("stdout is not a utf8 string") from err
    return parse_nvidia_smi_output(text)