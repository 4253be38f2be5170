# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

from types import SimpleNamespace

import pytest
from docker.errors import APIError, NotFound

from stackship.errors import ContainerRuntimeError
from stackship.MODELS.container import ContainerHandle, ContainerSpec, ContainerStatus
from stackship.RUNTIME.base import LABEL_CONFIG_HASH, LABEL_PROJECT, LABEL_SERVICE
from stackship.RUNTIME.docker_runtime import DockerRuntime


class FakeContainer:
    def __init__(self, cid, name, labels, status="created", exit_code=0, networks=None):
        self.id = cid
        self.name = name
        self.started = False
        self.removed = False
        self.connected = []
        self.attrs = {
            "Image": f"sha256:{name}",
            "Config": {"Labels": labels, "Image": "api:1"},
            "State": {"Status": status, "ExitCode": exit_code},
            "NetworkSettings": {"Networks": networks or {}},
        }

    def start(self):
        self.started = True
        self.attrs["State"]["Status"] = "running"

    def reload(self):
        pass

    def stop(self, timeout=10):
        self.attrs["State"]["Status"] = "exited"

    def remove(self, force=False):
        self.removed = True

    def exec_run(self, command):
        return SimpleNamespace(exit_code=0 if command == ["true"] else 1)


class FakeContainers:
    def __init__(self):
        self.by_id = {}
        self.created = []
        self.list_filters = None

    def list(self, all=False, filters=None):
        self.list_filters = filters
        return list(self.by_id.values())

    def get(self, cid):
        if cid not in self.by_id:
            raise NotFound("No such container")
        return self.by_id[cid]

    def create(self, image, **kwargs):
        self.created.append((image, kwargs))
        if kwargs["name"] == "shop-broken":
            raise APIError("port is already allocated")
        container = FakeContainer(f"id{len(self.created)}", kwargs["name"], kwargs["labels"])
        self.by_id[container.id] = container
        return container


class FakeNetwork:
    def __init__(self, name):
        self.name = name
        self.connections = []

    def connect(self, container, aliases=None):
        self.connections.append((container.name, aliases))


class FakeNetworks:
    def __init__(self):
        self.by_name = {}

    def list(self, names=None):
        return [self.by_name[n] for n in names or [] if n in self.by_name]

    def create(self, name, driver=None, labels=None):
        self.by_name[name] = FakeNetwork(name)
        return self.by_name[name]

    def get(self, name):
        return self.by_name[name]


class FakeVolume:
    def __init__(self, name, volumes):
        self.name = name
        self._volumes = volumes

    def remove(self):
        del self._volumes.by_name[self.name]


class FakeVolumes:
    def __init__(self):
        self.by_name = {}

    def get(self, name):
        if name not in self.by_name:
            raise NotFound("no such volume")
        return self.by_name[name]

    def create(self, name, labels=None):
        self.by_name[name] = FakeVolume(name, self)
        return self.by_name[name]

    def list(self, filters=None):
        return list(self.by_name.values())


class FakeDockerClient:
    def __init__(self):
        self.containers = FakeContainers()
        self.networks = FakeNetworks()
        self.volumes = FakeVolumes()
        self.api = SimpleNamespace(create_endpoint_config=lambda aliases=None: {"Aliases": aliases})


@pytest.fixture
def client():
    return FakeDockerClient()


@pytest.fixture
def runtime(client):
    return DockerRuntime(client=client)


def spec(name="api", networks=("front", "back")):
    return ContainerSpec(
        service=name,
        name=f"shop-{name}",
        image="api:1",
        environment={"MODE": "prod"},
        ports={"8000/tcp": 8000},
        volumes={"dbdata": {"bind": "/data", "mode": "rw"}, "/srv/site": {"bind": "/site", "mode": "ro"}},
        networks=list(networks),
        aliases=[name],
        labels={LABEL_PROJECT: "shop", LABEL_SERVICE: name, LABEL_CONFIG_HASH: "abc"},
    )


def test_create_scopes_networks_and_volumes(runtime, client):
    client.networks.create("shop_back")
    handle = runtime.create_container(spec())

    image, kwargs = client.containers.created[0]
    assert image == "api:1"
    assert kwargs["network"] == "shop_front"
    assert kwargs["networking_config"] == {"shop_front": {"Aliases": ["api"]}}
    assert kwargs["volumes"] == {"shop_dbdata": {"bind": "/data", "mode": "rw"},
                                 "/srv/site": {"bind": "/site", "mode": "ro"}}
    assert kwargs["restart_policy"] == {"Name": "no"}
    assert client.networks.get("shop_back").connections == [("shop-api", ["api"])]
    assert handle.service == "api"
    assert handle.config_hash == "abc"
    assert handle.status == ContainerStatus.CREATED


def test_create_failure(runtime):
    with pytest.raises(ContainerRuntimeError) as exc:
        runtime.create_container(spec("broken", networks=()))
    assert "port is already allocated" in str(exc.value)


def test_start_stop_remove(runtime, client):
    handle = runtime.start_container(runtime.create_container(spec(networks=())))
    assert handle.is_running

    runtime.stop_container(handle)
    stopped = runtime.inspect(handle)
    assert stopped.has_exited
    assert stopped.exit_code == 0

    runtime.remove_container(handle)
    assert client.containers.by_id[handle.container_id].removed


def test_gone_container(runtime):
    handle = ContainerHandle(service="api", container_id="nope", name="shop-api", image="api:1")
    assert runtime.inspect(handle).status == ContainerStatus.MISSING
    runtime.stop_container(handle)
    runtime.remove_container(handle)


def test_list_by_project_label(runtime, client):
    client.containers.by_id["x"] = FakeContainer(
        "x", "shop-db", {LABEL_PROJECT: "shop", LABEL_SERVICE: "db"}, status="exited", exit_code=137,
        networks={"shop_back": {"IPAddress": "172.20.0.3"}})

    handles = runtime.list_containers("shop")

    assert client.containers.list_filters == {"label": "stackship.project=shop"}
    assert handles[0].service == "db"
    assert handles[0].exit_code == 137
    assert handles[0].addresses == {"back": "172.20.0.3"}


def test_probe(runtime):
    handle = runtime.create_container(spec(networks=()))
    assert runtime.run_probe(handle, ["true"], timeout=1)
    assert not runtime.run_probe(handle, ["false"], timeout=1)


def test_networks_and_volumes(runtime, client):
    runtime.ensure_network("shop", "front")
    runtime.ensure_network("shop", "front")
    assert list(client.networks.by_name) == ["shop_front"]

    runtime.ensure_volume("shop", "dbdata")
    runtime.ensure_volume("shop", "dbdata")
    assert runtime.list_volumes("shop") == ["dbdata"]

    runtime.remove_volume("shop", "dbdata")
    runtime.remove_volume("shop", "dbdata")
    assert runtime.list_volumes("shop") == []
