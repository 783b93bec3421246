"""Lookup of the sweep secret an external scheduler presents to ``run_sweep``.

The password-store entry ``notegraph/sweep_secret`` wins when ``pass`` is
installed; otherwise ``NOTEGRAPH_SWEEP_SECRET`` is used.  The value is read
on every call, so a rotated secret applies without a restart.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess

log = logging.getLogger(__name__)

SWEEP_SECRET_ENTRY = "notegraph/sweep_secret"
SWEEP_SECRET_ENV = "NOTEGRAPH_SWEEP_SECRET"

_PASS_TIMEOUT = 5


def has_pass() -> bool:
    """Return ``True`` if the ``pass`` CLI is installed and on ``$PATH``."""
    return shutil.which("pass") is not None


def _from_pass() -> str | None:
    if not has_pass():
        return None
    try:
        result = subprocess.run(
            ["pass", "show", SWEEP_SECRET_ENTRY],
            capture_output=True,
            text=True,
            timeout=_PASS_TIMEOUT,
            check=False,
        )
    except (subprocess.TimeoutExpired, OSError) as exc:
        log.warning("pass show %s failed: %s", SWEEP_SECRET_ENTRY, exc)
        return None
    if result.returncode != 0:
        log.debug("No %s entry in the password store", SWEEP_SECRET_ENTRY)
        return None
    return result.stdout.strip() or None


def sweep_secret() -> str | None:
    """The configured sweep secret, or ``None`` when neither source has one."""
    return _from_pass() or os.environ.get(SWEEP_SECRET_ENV) or None
