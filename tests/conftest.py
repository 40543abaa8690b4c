"""Pytest configuration and shared fixtures for GPU governance tests."""

from typing import Callable
from unittest.mock import MagicMock, patch

import pytest
from prometheus_client import CollectorRegistry

from gpu_governance.adapters.outbound.in_memory_orchestrator import InMemoryOrchestrator
from gpu_governance.adapters.outbound.in_memory_store import InMemoryObjectStore
from gpu_governance.adapters.outbound.metrics import PrometheusExporter
from gpu_governance.adapters.outbound.nvml_inventory import NvmlDeviceInventory
from gpu_governance.adapters.outbound.simulated_driver import SimulatedDeviceDriver
from gpu_governance.application.coordinator import GovernanceEngine
from gpu_governance.domain.entities.gpu_device import GPUDevice
from gpu_governance.domain.value_objects.identifiers import NodeName
from gpu_governance.infrastructure.config import Config, get_config
from gpu_governance.infrastructure.container import Container
from gpu_governance.infrastructure.metrics import reset_metrics

from factories import NODE


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture(autouse=True)
def reset_container():
    """Reset the DI container before each test."""
    Container.reset()
    get_config.cache_clear()
    reset_metrics()
    yield
    Container.reset()
    get_config.cache_clear()
    reset_metrics()


@pytest.fixture
def test_config() -> Config:
    """Provide a test configuration."""
    return Config()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryObjectStore:
    return InMemoryObjectStore()


@pytest.fixture
def orchestrator() -> InMemoryOrchestrator:
    return InMemoryOrchestrator()


@pytest.fixture
def driver() -> SimulatedDeviceDriver:
    return SimulatedDeviceDriver()


@pytest.fixture
def inventory() -> NvmlDeviceInventory:
    """Two simulated 40 GB A100s on node-a."""
    return NvmlDeviceInventory(node=NODE, dev_mode=True, dev_device_count=2, dev_memory_mb=40960)


@pytest.fixture
def metrics() -> PrometheusExporter:
    return PrometheusExporter(CollectorRegistry())


@pytest.fixture
def make_device() -> Callable[..., GPUDevice]:
    """Factory for devices on node-a."""

    def _make(index: int = 0, memory_mb: int = 40960, compute_capability: str = "8.0", **kwargs) -> GPUDevice:
        return GPUDevice(
            node=NodeName(kwargs.pop("node", NODE)),
            index=index,
            total_memory_mb=memory_mb,
            compute_capability=compute_capability,
            model=kwargs.pop("model", "A100-SXM4-40GB"),
            **kwargs,
        )

    return _make


@pytest.fixture
def engine_factory(inventory, orchestrator, driver, store, metrics, clock):
    """Build initialized engines that handle events inline.

    Engines share the fixture collaborators unless overridden, so a second
    engine over the same store behaves like a restarted process.
    """
    engines = []

    def _build(**kwargs) -> GovernanceEngine:
        options = {
            "inventory": inventory,
            "orchestrator": orchestrator,
            "driver": driver,
            "store": store,
            "metrics": metrics,
            "event_workers": 0,
            "clock": clock,
        }
        options.update(kwargs)
        engine = GovernanceEngine(**options)
        options["orchestrator"].set_eviction_callback(engine.report_evicted)
        engine.initialize()
        engines.append(engine)
        return engine

    yield _build
    for engine in engines:
        engine.shutdown()


@pytest.fixture
def engine(engine_factory) -> GovernanceEngine:
    """Initialized engine over two unpartitioned devices."""
    return engine_factory()


@pytest.fixture
def mock_nvml():
    """Mock NVML library reporting one 80 GB A100."""
    handle = MagicMock()
    with patch("pynvml.nvmlInit") as mock_init, \
            patch("pynvml.nvmlShutdown") as mock_shutdown, \
            patch("pynvml.nvmlDeviceGetCount", return_value=1) as mock_count, \
            patch("pynvml.nvmlDeviceGetHandleByIndex", return_value=handle) as mock_handle, \
            patch("pynvml.nvmlDeviceGetName", return_value=b"NVIDIA A100-SXM4-80GB"), \
            patch("pynvml.nvmlDeviceGetCudaComputeCapability", return_value=(8, 0)), \
            patch("pynvml.nvmlDeviceGetMemoryInfo", return_value=MagicMock(total=81920 * 1024 * 1024)), \
            patch("pynvml.nvmlDeviceGetTotalEccErrors", return_value=0) as mock_ecc:
        yield {
            "init": mock_init,
            "shutdown": mock_shutdown,
            "count": mock_count,
            "handle": mock_handle,
            "ecc": mock_ecc,
        }


@pytest.fixture
def container(test_config: Config) -> Container:
    """Provide a configured container for testing."""
    with patch("gpu_governance.infrastructure.container.get_config", return_value=test_config):
        return Container.create()


# Pytest markers
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: mark test as unit test")
    config.addinivalue_line("markers", "integration: mark test as integration test")
