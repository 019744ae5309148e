"""
Tests for the container lifecycle.
"""

import asyncio
import base64
import gc
import struct

import docker.auth
import docker.credentials
import pytest

from berth.core.container import ContainerHandle, ContainerState
from berth.core.exceptions import BackendError, DependencyNotFoundError, ImagePullError, LogStreamError
from berth.core.log_streamer import LogTask
from berth.core.project import Service
from berth.core.registry import CredentialStore


class FakeCredentialHelper:
    """Stands in for a docker-credential-* helper program."""

    def __init__(self, entries, error=None):
        self.entries = entries
        self.error = error
        self.lookups = []

    def get(self, server):
        self.lookups.append(server)
        if self.error is not None:
            raise self.error
        if server not in self.entries:
            raise docker.credentials.CredentialsNotFound(server)
        return self.entries[server]


@pytest.fixture
def project(make_project):
    return make_project({"web": {"image": "nginx", "environment": {"MODE": "prod"}}})


@pytest.fixture
def web(project):
    return project.create_service("web").container(1)


class TestCreate:
    """Tests for ContainerHandle.create."""

    @pytest.mark.asyncio
    async def test_create_new_container(self, web, fake_client):
        """Test creating a container that does not exist."""
        container = await web.create()

        assert container.name == "demo_web_1"
        assert fake_client.calls_named("create") == [("create", "demo_web_1")]
        assert web.state() == ContainerState.CREATED

    @pytest.mark.asyncio
    async def test_create_is_idempotent(self, web, fake_client):
        """Test creating twice returns the same container."""
        first = await web.create()
        second = await web.create()

        assert first.id == second.id
        assert len(fake_client.calls_named("create")) == 1

    @pytest.mark.asyncio
    async def test_create_stamps_bookkeeping_labels(self, web, fake_client):
        """Test container, service and project labels are written."""
        await web.create()

        labels = fake_client.create_requests["demo_web_1"]["labels"]
        assert labels == {
            "io.berth.container-name": "demo_web_1",
            "io.berth.service": "web",
            "io.berth.project": "demo",
        }
        assert fake_client.create_requests["demo_web_1"]["environment"] == {"MODE": "prod"}

    @pytest.mark.asyncio
    async def test_create_uses_configured_label_keys(self, make_project, fake_client):
        """Test label keys come from configuration."""
        from berth.core.config_manager import LabelKeys

        labels = LabelKeys(container="x.name", service="x.service", project="x.project")
        project = make_project({"web": {"image": "nginx"}}, labels=labels)

        await project.create_service("web").container(1).create()

        assert fake_client.create_requests["demo_web_1"]["labels"] == {
            "x.name": "demo_web_1",
            "x.service": "web",
            "x.project": "demo",
        }

    @pytest.mark.asyncio
    async def test_create_resolves_links(self, make_project, add_service_container, fake_client):
        """Test the create request carries resolved links."""
        project = make_project({
            "web": {"image": "nginx", "links": ["db"]},
            "db": {"image": "postgres"},
        })
        add_service_container(project, "db", "demo_db_1")

        await project.create_service("web").container(1).create()

        host_config = fake_client.create_requests["demo_web_1"]["host_config"]
        assert host_config["Links"] == ["demo_db_1:db", "demo_db_1:demo_db_1"]

    @pytest.mark.asyncio
    async def test_missing_image_is_pulled_and_create_retried(self, web, fake_client):
        """Test a missing image triggers a pull with the default tag."""
        fake_client.images.clear()

        container = await web.create()

        assert fake_client.pulls == [("nginx:latest", None)]
        assert [call[0] for call in fake_client.calls if call[0] in ("create", "pull_image")] == [
            "create", "pull_image", "create"
        ]
        assert container.id == web.id()

    @pytest.mark.asyncio
    async def test_pull_failure_is_fatal(self, web, fake_client):
        """Test a failed pull aborts the create."""
        fake_client.images.clear()
        fake_client.pull_failures["nginx:latest"] = "manifest unknown"

        with pytest.raises(ImagePullError, match="manifest unknown"):
            await web.create()

        assert web.id() is None
        assert len(fake_client.calls_named("create")) == 1

    @pytest.mark.asyncio
    async def test_pull_uses_registry_credentials(self, make_project, fake_client):
        """Test credentials for the image's registry are attached."""
        encoded = base64.b64encode(b"ci:s3cret").decode()
        store = CredentialStore.from_dict({"auths": {"https://registry.example.com/v2/": {"auth": encoded}}})
        project = make_project(
            {"web": {"image": "registry.example.com/team/web:1.2"}},
            credential_store=store,
        )
        fake_client.images.clear()

        await project.create_service("web").container(1).create()

        [(image, auth)] = fake_client.pulls
        assert image == "registry.example.com/team/web:1.2"
        assert (auth["username"], auth["password"]) == ("ci", "s3cret")

    @pytest.mark.asyncio
    async def test_pull_uses_credential_helper(self, make_project, fake_client, monkeypatch):
        """Test credentials kept by a credsStore helper are attached."""
        helper = FakeCredentialHelper({"registry.example.com": {"Username": "alice", "Secret": "s3cret"}})
        monkeypatch.setattr(docker.auth.AuthConfig, "_get_store_instance", lambda self, name: helper)
        store = CredentialStore.from_dict({
            "auths": {"registry.example.com": {}},
            "credsStore": "desktop",
        })
        project = make_project({"web": {"image": "registry.example.com/app"}}, credential_store=store)
        fake_client.images.clear()

        await project.create_service("web").container(1).create()

        [(image, auth)] = fake_client.pulls
        assert image == "registry.example.com/app:latest"
        assert auth["Username"] == "alice"
        assert auth["Password"] == "s3cret"
        assert helper.lookups == ["registry.example.com"]

    @pytest.mark.asyncio
    async def test_credential_helper_failure_is_a_pull_error(self, make_project, fake_client, monkeypatch):
        """Test a broken credential helper aborts the pull with ImagePullError."""
        helper = FakeCredentialHelper({}, error=docker.credentials.StoreError("helper crashed"))
        monkeypatch.setattr(docker.auth.AuthConfig, "_get_store_instance", lambda self, name: helper)
        store = CredentialStore.from_dict({"credsStore": "desktop"})
        project = make_project({"web": {"image": "registry.example.com/app"}}, credential_store=store)
        fake_client.images.clear()

        with pytest.raises(ImagePullError, match="helper crashed"):
            await project.create_service("web").container(1).create()

        assert fake_client.pulls == []

    @pytest.mark.asyncio
    async def test_duplicate_name_conflict_surfaces(self, web, fake_client, monkeypatch):
        """Test a concurrent create by someone else surfaces as a backend error."""
        monkeypatch.setattr(web, "find", lambda: None)
        fake_client.add_container("demo_web_1")

        with pytest.raises(BackendError, match="already in use"):
            await web.create()


class TestUp:
    """Tests for ContainerHandle.up."""

    @pytest.mark.asyncio
    async def test_up_fresh_environment(self, web, fake_client):
        """Test up creates once, starts once and ends running."""
        task = await web.up()

        assert task is None
        assert len(fake_client.calls_named("create")) == 1
        assert len(fake_client.calls_named("start")) == 1
        assert web.state() == ContainerState.RUNNING

    @pytest.mark.asyncio
    async def test_up_already_running(self, web, fake_client):
        """Test up does not restart a running container."""
        await web.up()
        await web.up()

        assert len(fake_client.calls_named("create")) == 1
        assert len(fake_client.calls_named("start")) == 1

    @pytest.mark.asyncio
    async def test_up_starts_stopped_container(self, web, fake_client):
        """Test up starts an existing stopped container."""
        await web.up()
        await web.down()

        await web.up()

        assert len(fake_client.calls_named("start")) == 2
        assert web.state() == ContainerState.RUNNING

    @pytest.mark.asyncio
    async def test_up_reresolves_dependencies_before_start(self, make_project, add_service_container, fake_client):
        """Test containers appearing after create are linked at start."""
        project = make_project({
            "web": {"image": "nginx", "links": ["db"]},
            "db": {"image": "postgres"},
        })
        handle = project.create_service("web").container(1)
        await handle.create()
        add_service_container(project, "db", "demo_db_1")

        await handle.up()

        _, _, host_config = fake_client.calls_named("start")[0]
        assert host_config["Links"] == ["demo_db_1:db", "demo_db_1:demo_db_1"]

    @pytest.mark.asyncio
    async def test_up_missing_ipc_target_never_starts(self, make_project, fake_client):
        """Test an unresolvable namespace dependency aborts before start."""
        project = make_project({
            "worker": {"image": "app", "ipc": "service:broker"},
            "broker": {"image": "rabbitmq"},
        })

        with pytest.raises(DependencyNotFoundError):
            await project.create_service("worker").container(1).up()

        assert fake_client.calls_named("start") == []

    @pytest.mark.asyncio
    async def test_up_with_ipc_target(self, make_project, add_service_container, fake_client):
        """Test up shares the IPC namespace of the target container."""
        project = make_project({
            "worker": {"image": "app", "ipc": "service:broker"},
            "broker": {"image": "rabbitmq"},
        })
        broker = add_service_container(project, "broker", "demo_broker_1")

        await project.create_service("worker").container(1).up()

        assert fake_client.create_requests["demo_worker_1"]["host_config"]["IpcMode"] == f"container:{broker.id}"
        _, _, host_config = fake_client.calls_named("start")[0]
        assert host_config["IpcMode"] == f"container:{broker.id}"

    @pytest.mark.asyncio
    async def test_up_spawns_log_task_when_enabled(self, make_project, fake_client, recording_sink):
        """Test log forwarding starts after a successful start."""
        project = make_project({"web": {"image": "nginx"}}, log=True, logger_factory=lambda name: recording_sink)
        handle = project.create_service("web").container(1)

        task = await handle.up()

        assert isinstance(task, LogTask)
        await task.wait()
        assert task.done()
        ops = [call[0] for call in fake_client.calls]
        assert ops.index("start") < ops.index("stream_logs")

    @pytest.mark.asyncio
    async def test_log_errors_do_not_fail_up(self, make_project, fake_client, monkeypatch):
        """Test a broken log stream is swallowed."""
        project = make_project({"web": {"image": "nginx"}}, log=True)

        def broken_stream(*args, **kwargs):
            raise BackendError("log driver does not support reading")

        monkeypatch.setattr(fake_client, "stream_logs", broken_stream)

        task = await project.create_service("web").container(1).up()
        await task.wait()

        assert isinstance(task.exception, BackendError)


class TestStopAndRemove:
    """Tests for down, delete and restart."""

    @pytest.mark.asyncio
    async def test_down_stops_with_timeout(self, make_project, fake_client):
        """Test down stops with the configured timeout."""
        project = make_project({"web": {"image": "nginx"}}, timeout=3)
        handle = project.create_service("web").container(1)
        container = await handle.create()
        await handle.up()

        await handle.down()

        assert fake_client.calls_named("stop") == [("stop", container.id, 3)]
        assert handle.state() == ContainerState.STOPPED

    @pytest.mark.asyncio
    async def test_down_absent_is_noop(self, web, fake_client):
        """Test down on a missing container does nothing."""
        await web.down()

        assert [call[0] for call in fake_client.calls] == ["find_by_name"]

    @pytest.mark.asyncio
    async def test_delete_running_stops_then_removes(self, web, fake_client):
        """Test delete stops a running container before removing it."""
        await web.up()
        container_id = web.id()

        await web.delete()

        ops = [call for call in fake_client.calls if call[0] in ("stop", "remove")]
        assert ops == [("stop", container_id, 10), ("remove", container_id, True, False)]
        assert web.state() == ContainerState.ABSENT

    @pytest.mark.asyncio
    async def test_delete_stopped_only_removes(self, web, fake_client):
        """Test delete skips stop for a stopped container."""
        await web.create()

        await web.delete()

        assert fake_client.calls_named("stop") == []
        assert len(fake_client.calls_named("remove")) == 1

    @pytest.mark.asyncio
    async def test_delete_absent_is_noop(self, web, fake_client):
        """Test delete on a missing container makes no mutating calls."""
        await web.delete()

        assert [call[0] for call in fake_client.calls] == ["find_by_name"]

    @pytest.mark.asyncio
    async def test_restart(self, web, fake_client):
        """Test restart uses the grace timeout."""
        await web.up()

        await web.restart()

        assert fake_client.calls_named("restart") == [("restart", web.id(), 10)]

    @pytest.mark.asyncio
    async def test_restart_absent_is_noop(self, web, fake_client):
        """Test restart on a missing container does nothing."""
        await web.restart()

        assert fake_client.calls_named("restart") == []


class TestHandle:
    """Tests for handle identity."""

    def test_id_absent(self, web):
        """Test id is None without error when absent."""
        assert web.id() is None
        assert web.state() == ContainerState.ABSENT

    def test_name(self, web):
        assert web.name == "demo_web_1"

    def test_handles_are_recreatable(self, project, web):
        """Test two handles with the same name see the same container."""
        other = ContainerHandle("demo_web_1", project.create_service("web"))

        assert other.name == web.name
        assert other.id() == web.id()

    def test_service_reference_is_weak(self, project):
        """Test a handle does not keep its service alive."""
        service = Service("orphan", project.configs["web"], project)
        handle = ContainerHandle("demo_orphan_1", service)

        del service
        gc.collect()

        with pytest.raises(RuntimeError, match="no longer exists"):
            handle.id()

    @pytest.mark.asyncio
    async def test_explicit_pull(self, web, fake_client):
        """Test pull fetches the configured image."""
        await web.pull()

        assert fake_client.pulls == [("nginx:latest", None)]


class TestForegroundLog:
    """Tests for ContainerHandle.log."""

    @pytest.fixture
    def running_web(self, project, fake_client):
        labels = project.create_service("web").ownership_labels()
        return fake_client.add_container("demo_web_1", labels=labels, running=True)

    @pytest.mark.asyncio
    async def test_malformed_stream_raises_backend_error(self, web, running_web, fake_client, recording_sink):
        """Test a truncated frame surfaces as a Berth error."""
        fake_client.logs[running_web.id] = [struct.pack(">BxxxL", 1, 10) + b"abc"]

        with pytest.raises(LogStreamError, match="ended inside a frame"):
            await web.log(recording_sink)

    @pytest.mark.asyncio
    async def test_other_stream_failures_are_wrapped(self, web, running_web, fake_client, recording_sink, monkeypatch):
        def broken_stream(*args, **kwargs):
            raise OSError("connection reset by peer")

        monkeypatch.setattr(fake_client, "stream_logs", broken_stream)

        with pytest.raises(BackendError, match="connection reset by peer"):
            await web.log(recording_sink)

    @pytest.mark.asyncio
    async def test_cancelling_log_closes_stream(self, web, running_web, fake_client, recording_sink,
                                                blocking_stream, monkeypatch):
        """Test cancelling the caller releases a blocked follow stream."""
        stream = blocking_stream
        monkeypatch.setattr(fake_client, "stream_logs", lambda *args, **kwargs: stream)

        caller = asyncio.ensure_future(web.log(recording_sink))
        assert await asyncio.get_running_loop().run_in_executor(None, stream.opened.wait, 5)
        caller.cancel()

        with pytest.raises(asyncio.CancelledError):
            await caller

        assert stream.closed.is_set()
        await asyncio.get_running_loop().run_in_executor(None, stream.finished.wait, 5)
        assert stream.timed_out is False
