# =============================================================================
#  Guildvault
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================


import contextvars
import secrets
from contextlib import contextmanager
from typing import Optional

guild_name = contextvars.ContextVar("guild_name", default=None)
task_label = contextvars.ContextVar("task_label", default=None)


def format_prefix() -> str:
    """
    Build a prefix like "[<guild>][<task>] ", dropping whichever part is unset.
    """
    g = guild_name.get()
    t = task_label.get()

    parts = []
    if g:
        parts.append(f"[{g}]")
    if t:
        parts.append(f"[{t}]")

    return "".join(parts) + " " if parts else ""


@contextmanager
def task_context(kind: str, name: Optional[str] = None):
    """
    Bind the guild name and a short task label ("restore a1b2c") for the
    duration of a capture or restore run.
    """
    t1 = guild_name.set(name)
    t2 = task_label.set(f"{kind} {secrets.token_hex(3)[:5]}")
    try:
        yield
    finally:
        task_label.reset(t2)
        guild_name.reset(t1)
