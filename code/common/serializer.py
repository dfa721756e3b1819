# =============================================================================
#  Guildvault
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

import json
from typing import Any

from common.models import Snapshot, to_plain


def _normalize(value: Any) -> Any:
    value = to_plain(value)
    if isinstance(value, (set, frozenset)):
        return sorted((_normalize(v) for v in value), key=stable_stringify)
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_normalize(v) for v in value]
    return value


def stable_stringify(value: Any) -> str:
    """
    Canonical JSON text for `value`: object keys sorted at every depth,
    sequence order preserved, no insignificant whitespace.

    Two structurally equal values always produce identical text, which is
    what the diff engine and the change detector compare.
    """
    return json.dumps(
        _normalize(value),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def dumps_snapshot(snapshot, beautify: bool = False) -> str:
    data = snapshot.to_dict()
    if beautify:
        return json.dumps(data, indent=4, ensure_ascii=False)
    return json.dumps(data, ensure_ascii=False)


def loads_snapshot(text: str):
    return Snapshot.from_dict(json.loads(text))
