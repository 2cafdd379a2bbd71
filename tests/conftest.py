import pytest
import sys
from pathlib import Path

# Ensure src/ is in the python path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from repohost.core.models import CommandSpec, HostSettings  # noqa: E402
from repohost.core.releases import ReleaseManager  # noqa: E402
from repohost.runtime.process import ProcessSupervisor  # noqa: E402
from repohost.utils.diagnostics import CloneFailed, FetchUnreachable, InstallFailed  # noqa: E402

SLEEP_COMMAND = CommandSpec(argv=[sys.executable, "-c", "import time; time.sleep(60)"])


@pytest.fixture(autouse=True)
def clean_supervisor_env(monkeypatch):
    """Keep the host environment from leaking into HostSettings."""
    for name in HostSettings.reserved_env_names():
        monkeypatch.delenv(name, raising=False)


class LogSink:
    def __init__(self):
        self.events = []

    def __call__(self, message: str, severity: str = "info") -> None:
        self.events.append((severity, message))

    def messages(self, severity=None):
        return [m for s, m in self.events if severity is None or s == severity]


class FakeSource:
    """In-memory source adapter: every revision materializes as a REVISION file."""

    def __init__(self, head: str = "abc123"):
        self.head = head
        self.fail_fetch = False
        self.fail_materialize = set()
        self.fetch_calls = 0
        self.attempts = []

    def fetch_head_revision(self, branch: str) -> str:
        self.fetch_calls += 1
        if self.fail_fetch:
            raise FetchUnreachable("remote unreachable")
        return self.head

    def materialize(self, revision: str, target_dir: Path) -> None:
        self.attempts.append(revision)
        target_dir.mkdir(parents=True, exist_ok=True)
        if revision in self.fail_materialize:
            (target_dir / "partial").write_text("half a clone")
            raise CloneFailed("clone exploded", revision=revision)
        (target_dir / "REVISION").write_text(revision)


class FakeInstaller:
    def __init__(self):
        self.fail = set()
        self.installed = []
        self.on_install = None

    def install(self, release_dir: Path) -> None:
        if self.on_install is not None:
            self.on_install(release_dir)
        if release_dir.name in self.fail:
            raise InstallFailed("npm exploded")
        (release_dir / "node_modules").mkdir(exist_ok=True)
        self.installed.append(release_dir.name)


class TrackingSupervisor(ProcessSupervisor):
    """ProcessSupervisor that remembers every handle so tests can clean up."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.started = []

    def start(self, release_dir, command=None, env=None):
        handle = super().start(release_dir, command=command, env=env)
        self.started.append(handle)
        return handle


@pytest.fixture
def log_sink():
    return LogSink()


@pytest.fixture
def settings(tmp_path) -> HostSettings:
    return HostSettings(
        repo_url="file:///nonexistent/repo.git",
        releases_dir=tmp_path / "releases",
        current_link=tmp_path / "current",
        state_file=tmp_path / "supervisor.json",
        check_interval=0.01,
        grace_period=2,
        port_release_delay=0,
    )


@pytest.fixture
def supervisor(log_sink):
    tracking = TrackingSupervisor(
        start_command=SLEEP_COMMAND,
        grace_period=2,
        port_release_delay=0,
        reserved_env=HostSettings.reserved_env_names(),
        poll_interval=0.05,
        log=log_sink,
    )
    yield tracking
    for handle in tracking.started:
        tracking.stop(handle)


@pytest.fixture
def fake_source():
    return FakeSource()


@pytest.fixture
def fake_installer():
    return FakeInstaller()


@pytest.fixture
def release_manager(settings, fake_source, fake_installer, supervisor, log_sink) -> ReleaseManager:
    return ReleaseManager(
        releases_dir=settings.releases_dir,
        current_link=settings.current_link,
        source=fake_source,
        installer=fake_installer,
        supervisor=supervisor,
        keep_releases=settings.keep_releases,
        log=log_sink,
    )
