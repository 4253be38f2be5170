import time

from conftest import FakeRegistry, FakeRuntime
from stackship.MANAGERS.reconcile_engine import ReconcileEngine
from stackship.MODELS.container import ReconcileAction
from stackship.MODELS.service_definition import ServiceDefinition
from stackship.MODELS.topology import ServiceTopology
from stackship.PARSERS.compose_parser import ComposeParser


def test_stress_reconcile(tmp_path):
    """
    Reconciles 50 independent services in one wave, then a 50-deep chain.
    """
    services = [ServiceDefinition(name=f"service_{i}", image="dummy") for i in range(50)]
    runtime = FakeRuntime()
    engine = ReconcileEngine(runtime, FakeRegistry(runtime), base_dir=str(tmp_path), max_workers=8)

    start_time = time.time()
    result = engine.reconcile(ServiceTopology(project="load", services=services))
    end_time = time.time()

    print(f"Reconciled 50 services in {end_time - start_time:.2f}s")
    assert result.succeeded
    assert len(result.outcomes) == 50
    assert len({o.container_id for o in result.outcomes}) == 50

    status = engine.ps(ServiceTopology(project="load", services=services))
    assert set(status.values()) == {"running"}

    chain = [ServiceDefinition(name=f"link_{i}", image="dummy", depends_on=[f"link_{i - 1}"] if i else [])
             for i in range(50)]
    result = engine.reconcile(ServiceTopology(project="chain", services=list(reversed(chain))))
    started = [svc for call, svc in runtime.calls if call == "start" and svc.startswith("link_")]
    assert started == [f"link_{i}" for i in range(50)]
    assert {o.action for o in result.outcomes} == {ReconcileAction.CREATED}


def test_large_config_parsing():
    parser = ComposeParser(context={})

    # Generate a large topology file
    content = "services:\n"
    for i in range(1000):
        content += f"  service_{i}:\n"
        content += f"    image: image_{i}\n"
        content += f"    environment:\n"
        content += f"      - VAR_{i}=VALUE_{i}\n"
        if i:
            content += f"    depends_on: [service_{i // 2}]\n"

    start_time = time.time()
    topology = parser.parse_from_string(content)
    order = topology.dependency_order()
    end_time = time.time()

    assert len(order) == 1000
    assert order[0].name == "service_0"
    assert end_time - start_time < 5.0  # Should parse and order 1000 services in well under 5 seconds
