import pytest

from common.config import Config
from common.models import Snapshot
from fakes import FakeGuild, no_sleep
from restore.rate_limiter import RateLimitManager
from restore.reconcile import IdentifierReconciler
from restore.report import RestoreContext, RestoreReport
from restore.retry import RetryConfig, RetryExecutor


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in (
        "MAX_MESSAGES_PER_CHANNEL",
        "SAVE_IMAGES",
        "BACKUP_STORAGE",
        "BACKUP_DIR",
        "DB_PATH",
    ):
        monkeypatch.delenv(key, raising=False)


class SleepRecorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def retry():
    return RetryExecutor(RetryConfig(max_attempts=3, base_delay_ms=1000), sleep=no_sleep)


@pytest.fixture
def pacing(sleeps):
    return RateLimitManager(sleep=sleeps)


@pytest.fixture
def guild():
    return FakeGuild()


async def fail_fetch(url):
    raise AssertionError(f"unexpected fetch of {url}")


@pytest.fixture
def make_ctx(retry, pacing):
    def _make(guild, snapshot: Snapshot, options=None, fetcher=fail_fetch):
        opts = Config().default_restore_options()
        opts.update(options or {})
        return RestoreContext(
            guild=guild,
            snapshot=snapshot,
            options=opts,
            report=RestoreReport(snapshot=snapshot, guild_id=str(guild.id)),
            retry=retry,
            pacing=pacing,
            reconciler=IdentifierReconciler(guild, snapshot),
            fetcher=fetcher,
        )

    return _make
