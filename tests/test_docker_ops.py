import pytest
from docker.errors import DockerException, ImageNotFound, NotFound

from tdc import docker_ops
from tdc.docker_ops import ContainerRef, DockerDriver
from tdc.runtime import InstanceSlot, Revision


class FakeContainer:
    def __init__(self, cid, exit_code=0):
        self.id = cid
        self.attrs = {"State": {"ExitCode": exit_code}}
        self.stopped_with = None
        self.removed = False

    def stop(self, timeout):
        self.stopped_with = timeout

    def reload(self):
        pass

    def remove(self, force=False):
        self.removed = True


class FakeContainers:
    def __init__(self):
        self.by_id = {}
        self.runs = []

    def run(self, image, **kwargs):
        self.runs.append((image, kwargs))
        cont = FakeContainer(f"c{len(self.runs)}")
        self.by_id[cont.id] = cont
        return cont

    def get(self, cid):
        if cid not in self.by_id:
            raise NotFound("no such container")
        return self.by_id[cid]


class FakeImages:
    def __init__(self, present=()):
        self.present = set(present)
        self.pulled = []

    def get(self, image):
        if image not in self.present:
            raise ImageNotFound("no such image")

    def pull(self, image):
        self.pulled.append(image)
        self.present.add(image)


class FakeNetworks:
    def __init__(self):
        self.created = []

    def get(self, name):
        if name not in self.created:
            raise NotFound("no such network")

    def create(self, name, driver):
        self.created.append(name)


class FakeClient:
    def __init__(self, up=True, images=()):
        self.up = up
        self.containers = FakeContainers()
        self.images = FakeImages(images)
        self.networks = FakeNetworks()

    def ping(self):
        if not self.up:
            raise DockerException("daemon not running")


@pytest.fixture
def client(monkeypatch):
    fake = FakeClient()
    monkeypatch.setattr(docker_ops, "_client", lambda: fake)
    return fake


def _slot(handle=None):
    return InstanceSlot(id="edge-3", tier="edge", revision=Revision("edge", "shop/edge:2.0"), seq=3, handle=handle)


@pytest.mark.parametrize("name", ["edge", "internal-api", "a1"])
def test_valid_tier_names(name):
    docker_ops.validate_tier_name(name)


@pytest.mark.parametrize("name", ["Edge", "1edge", "", "edge_api"])
def test_invalid_tier_names(name):
    with pytest.raises(ValueError):
        docker_ops.validate_tier_name(name)


@pytest.mark.parametrize("path", ["health", "http://evil/health", "/../etc"])
def test_invalid_health_paths(path):
    with pytest.raises(ValueError):
        DockerDriver(network="tdc", port=80, health_path=path)


def test_prepare_pulls_missing_image_once(client):
    driver = DockerDriver(network="tdc", port=80)
    rev = Revision("edge", "shop/edge:2.0")
    driver.prepare(rev)
    driver.prepare(rev)
    assert client.images.pulled == ["shop/edge:2.0"]


def test_prepare_without_daemon(monkeypatch):
    monkeypatch.setattr(docker_ops, "_client", lambda: FakeClient(up=False))
    with pytest.raises(RuntimeError):
        DockerDriver(network="tdc", port=80).prepare(Revision("edge", "shop/edge:2.0"))


def test_start_labels_container_and_passes_env(client):
    driver = DockerDriver(network="tdc", port=8080)
    ref = driver.start(_slot(), {"DATABASE_URL": "postgres://db-0"})

    assert isinstance(ref, ContainerRef)
    assert ref.name.startswith("tdc-edge-3-")
    image, kwargs = client.containers.runs[0]
    assert image == "shop/edge:2.0"
    assert kwargs["labels"] == {"tdc.tier": "edge", "tdc.slot": "edge-3", "tdc.revision": "shop/edge:2.0"}
    assert kwargs["environment"] == {"DATABASE_URL": "postgres://db-0"}
    assert kwargs["network"] == "tdc"
    assert client.networks.created == ["tdc"]


def test_drain_reports_forced_kill(client):
    driver = DockerDriver(network="tdc", port=80)
    client.containers.by_id["graceful"] = FakeContainer("graceful", exit_code=0)
    client.containers.by_id["killed"] = FakeContainer("killed", exit_code=137)

    assert driver.drain(_slot(ContainerRef("graceful", "n1")), 2.5) is True
    assert client.containers.by_id["graceful"].stopped_with == 3
    assert driver.drain(_slot(ContainerRef("killed", "n2")), 1) is False
    assert driver.drain(_slot(ContainerRef("gone", "n3")), 1) is True


def test_terminate_removes_container(client):
    driver = DockerDriver(network="tdc", port=80)
    client.containers.by_id["c9"] = FakeContainer("c9")
    driver.terminate(_slot(ContainerRef("c9", "n")))
    assert client.containers.by_id["c9"].removed
    driver.terminate(_slot(ContainerRef("missing", "n")))


def test_probe_targets_container_on_network(client, monkeypatch):
    seen = {}

    def fake_probe(url, timeout_s):
        seen["url"] = url
        seen["timeout"] = timeout_s
        return lambda: (True, "Healthy")

    monkeypatch.setattr(docker_ops, "http_probe", fake_probe)
    driver = DockerDriver(network="tdc", port=8080, health_path="/ready", probe_timeout_s=1.5)
    probe = driver.probe(_slot(ContainerRef("c1", "tdc-edge-3-abc123")))
    assert probe() == (True, "Healthy")
    assert seen == {"url": "http://tdc-edge-3-abc123:8080/ready", "timeout": 1.5}
