"""Run the governance engine with its REST API.

    python -m gpu_governance

Configuration comes from GPU_GOVERNANCE_* environment variables.
"""

from gpu_governance.adapters.inbound.rest_api import run_server
from gpu_governance.infrastructure.config import get_config
from gpu_governance.infrastructure.container import Container
from gpu_governance.infrastructure.metrics import setup_metrics


def main() -> None:
    config = get_config()
    if config.observability.enable_metrics:
        # Container.create picks up this exporter through get_metrics()
        setup_metrics(config.server.metrics_port)
    container = Container.create(config)
    engine = container.engine

    engine.initialize()
    polls_per_sync = max(1, int(config.inventory.poll_interval_seconds / config.transition.step_interval_seconds))
    engine.start_background(config.transition.step_interval_seconds, polls_per_sync)
    try:
        run_server(engine, config.server.host, config.server.port)
    finally:
        engine.shutdown()


if __name__ == "__main__":
    main()
