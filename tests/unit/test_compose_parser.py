import yaml
import pytest

from stackship.errors import TopologyError
from stackship.MODELS.service_definition import RestartPolicyCondition, VolumeMode
from stackship.PARSERS.compose_parser import ComposeParser


def test_parse(tmp_path):
    compose_content = {
        'services': {
            'web': {
                'image': 'nginx:latest',
                'ports': ['80:80'],
                'environment': {
                    'DEBUG': 'true'
                },
                'restart': 'always'
            },
            'db': {
                'image': 'postgres:13',
                'volumes': ['db_data:/var/lib/postgresql/data']
            }
        },
        'volumes': {
            'db_data': {}
        }
    }

    project_dir = tmp_path / "shop"
    project_dir.mkdir()
    compose_file = project_dir / "stackship.yml"
    with open(compose_file, 'w') as f:
        yaml.dump(compose_content, f)

    topology = ComposeParser(context={}).parse(str(compose_file))

    assert topology.project == "shop"
    assert topology.service_names == ['web', 'db']
    web = topology.service('web')
    assert web.image == 'nginx:latest'
    assert web.ports[0].host_port == 80
    assert web.ports[0].container_port == 80
    assert web.environment['DEBUG'] == 'true'
    assert web.restart_policy.condition == RestartPolicyCondition.ALWAYS

    assert [v.name for v in topology.volumes] == ['db_data']
    db = topology.service('db')
    assert db.volumes[0].source == 'db_data'
    assert db.volumes[0].target == '/var/lib/postgresql/data'
    assert db.volumes[0].is_named_volume


def test_project_name_from_document(parse_topology):
    topology = parse_topology("name: shop\nservices:\n  web:\n    image: nginx\n")
    assert topology.project == "shop"


def test_interpolation(parse_topology):
    content = """
services:
  api:
    image: "registry.local/api:${TAG:-latest}"
    environment:
      - DB_HOST=${DB_HOST}
      - MODE=${MODE:+set}
      - LITERAL=$$HOME
"""
    topology = parse_topology(content, context={"DB_HOST": "db", "MODE": "x"})
    api = topology.service("api")
    assert api.image == "registry.local/api:latest"
    assert api.environment == {"DB_HOST": "db", "MODE": "set", "LITERAL": "$HOME"}


def test_required_variable_missing(parse_topology):
    with pytest.raises(TopologyError):
        parse_topology("services:\n  api:\n    image: ${IMAGE:?image is required}\n")


def test_env_file_is_overridden_by_environment(tmp_path):
    (tmp_path / "api.env").write_text("A=from-file\nB=from-file\n")
    compose_file = tmp_path / "stackship.yml"
    compose_file.write_text(
        "services:\n"
        "  api:\n"
        "    image: api\n"
        "    env_file: api.env\n"
        "    environment:\n"
        "      B: explicit\n"
    )
    api = ComposeParser(context={}).parse(str(compose_file)).service("api")
    assert api.environment == {"A": "from-file", "B": "explicit"}


def test_missing_env_file(parse_topology):
    with pytest.raises(TopologyError):
        parse_topology("services:\n  api:\n    image: api\n    env_file: nope.env\n")


def test_build_without_image_gets_default_tag(parse_topology):
    api = parse_topology("services:\n  api:\n    build:\n      context: ./api\n      dockerfile: Dockerfile.prod\n").service("api")
    assert api.image == "api:latest"
    assert api.build_context == "./api"
    assert api.dockerfile == "Dockerfile.prod"
    assert api.is_buildable


def test_service_needs_image_or_build(parse_topology):
    with pytest.raises(TopologyError):
        parse_topology("services:\n  api:\n    command: run\n")


def test_restart_spellings(parse_topology):
    content = """
services:
  a: {image: a, restart: "no"}
  b: {image: b, restart: unless-stopped}
  c: {image: c, restart: on-failure}
  d:
    image: d
    restart: {condition: on-failure, max_retries: 3, delay: 2}
"""
    topology = parse_topology(content)
    assert topology.service("a").restart_policy.condition == RestartPolicyCondition.NEVER
    assert topology.service("b").restart_policy.condition == RestartPolicyCondition.ALWAYS
    assert topology.service("c").restart_policy.condition == RestartPolicyCondition.ON_FAILURE
    assert topology.service("d").restart_policy.max_retries == 3


def test_compose_restart_policy_block(parse_topology):
    content = """
services:
  worker:
    image: worker
    restart: {condition: on-failure, max_attempts: 3, delay: 1m30s, window: 120s}
"""
    policy = parse_topology(content).service("worker").restart_policy
    assert policy.condition == RestartPolicyCondition.ON_FAILURE
    assert policy.max_retries == 3
    assert policy.delay == 90.0


def test_unknown_restart_option_is_rejected(parse_topology):
    with pytest.raises(TopologyError) as exc:
        parse_topology("services:\n  w: {image: w, restart: {condition: always, attempts: 3}}\n")
    assert "attempts" in str(exc.value)

    with pytest.raises(TopologyError):
        parse_topology("services:\n  w: {image: w, restart: {condition: always, delay: soon}}\n")


def test_long_syntax_ports_and_volumes(parse_topology):
    content = """
services:
  web:
    image: web
    ports:
      - "127.0.0.1:8080:80/tcp"
      - {target: 443, published: 8443}
      - "9000"
    volumes:
      - ./site:/srv:ro
      - {source: cache, target: /cache, read_only: true}
volumes:
  cache: {}
"""
    web = parse_topology(content).service("web")
    assert [(p.host_port, p.container_port) for p in web.ports] == [(8080, 80), (8443, 443), (None, 9000)]
    assert web.volumes[0].mode == VolumeMode.READ_ONLY
    assert not web.volumes[0].is_named_volume
    assert web.volumes[1].read_only


def test_depends_on_mapping_and_command_string(parse_topology):
    content = """
services:
  db: {image: db}
  api:
    image: api
    command: gunicorn app:app --bind 0.0.0.0:8000
    depends_on:
      db: {condition: service_started}
"""
    api = parse_topology(content).service("api")
    assert api.depends_on == ["db"]
    assert api.command == ["gunicorn", "app:app", "--bind", "0.0.0.0:8000"]


def test_invalid_yaml(parse_topology):
    with pytest.raises(TopologyError):
        parse_topology("services: [unclosed")
