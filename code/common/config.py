# =============================================================================
#  Guildvault
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

import os
import logging
from typing import Optional

from common.db import DBManager

logger = logging.getLogger(__name__)
CURRENT_VERSION = "v1.0.0"

# Hard ceiling on captured messages per channel
MESSAGE_HARD_CAP = 1000


class Config:
    def __init__(
        self,
        db: Optional[DBManager] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.db = db

        def _get_from_db(key: str):
            if self.db is None:
                return None
            try:
                return self.db.get_config(key)
            except Exception:
                return None

        def _str(key: str, env_default: Optional[str] = None) -> Optional[str]:
            v = _get_from_db(key)
            if v is None or (isinstance(v, str) and v.strip() == ""):
                v = os.getenv(key, env_default)
            return v

        def _int(key: str, env_default: str = "0") -> int:
            raw = _str(key, env_default)
            try:
                return int(str(raw).strip())
            except Exception:
                try:
                    return int(env_default)
                except Exception:
                    return 0

        def _bool(key: str, env_default: str = "false") -> bool:
            raw = _str(key, env_default) or ""
            return str(raw).strip().lower() in ("1", "true", "yes", "y", "on")

        self.DISCORD_TOKEN = _str("DISCORD_TOKEN")

        self.BACKUP_STORAGE = (_str("BACKUP_STORAGE", "file") or "file").lower()
        self.BACKUP_DIR = _str("BACKUP_DIR", "./backups") or "./backups"
        self.DB_PATH = _str("DB_PATH", "./data/guildvault.db") or "./data/guildvault.db"

        self.MAX_MESSAGES_PER_CHANNEL = max(
            0, min(MESSAGE_HARD_CAP, _int("MAX_MESSAGES_PER_CHANNEL", "10"))
        )
        self.SAVE_IMAGES = (_str("SAVE_IMAGES", "url") or "url").lower()
        self.JSON_BEAUTIFY = _bool("JSON_BEAUTIFY", "true")
        self.SCHEDULE_INTERVAL_SECONDS = _int("SCHEDULE_INTERVAL_SECONDS", "86400")

        self.ROLE_DELAY_MS = _int("ROLE_DELAY_MS", "250")
        self.MEMBER_DELAY_MS = _int("MEMBER_DELAY_MS", "300")
        self.EMOJI_DELAY_MS = _int("EMOJI_DELAY_MS", "500")
        self.BAN_DELAY_MS = _int("BAN_DELAY_MS", "1000")
        self.MESSAGE_DELAY_MS = _int("MESSAGE_DELAY_MS", "1000")
        self.PAGE_DELAY_MS = _int("PAGE_DELAY_MS", "100")

        self.LOG_LEVEL = (_str("LOG_LEVEL", "INFO") or "INFO").upper()

        self.logger = (logger or logging.getLogger(__name__)).getChild(
            self.__class__.__name__
        )

    def default_capture_options(self) -> dict:
        return {
            "backup_id": None,
            "max_messages_per_channel": self.MAX_MESSAGES_PER_CHANNEL,
            "json_save": True,
            "json_beautify": self.JSON_BEAUTIFY,
            "do_not_backup": [],
            "backup_members": False,
            "save_images": self.SAVE_IMAGES,
        }

    def default_restore_options(self) -> dict:
        return {
            "clear_guild_before_restore": True,
            "max_messages_per_channel": self.MAX_MESSAGES_PER_CHANNEL,
            "restore_members": False,
            "allowed_mentions": None,
            "restore_onboarding": True,
            "restore_scheduled_events": True,
        }

    def pacing_delays(self) -> dict:
        """Per-action pause, in milliseconds, keyed by ActionType value."""
        return {
            "role": self.ROLE_DELAY_MS,
            "member": self.MEMBER_DELAY_MS,
            "emoji": self.EMOJI_DELAY_MS,
            "ban": self.BAN_DELAY_MS,
            "message": self.MESSAGE_DELAY_MS,
            "page": self.PAGE_DELAY_MS,
        }
