"""
Demo for LogShipper.

Shows:
- Prometheus metrics (exposed on :8000/metrics)
- loguru and stdlib logging wired to the shipper
- Health monitoring while the collector comes and goes

Run a collector first, e.g. ``nc -lk 5151``, or point LOGSHIPPER_SERVER_SPEC
at a logstash ``json_lines`` TCP input.
"""

import logging
import os
import time

from loguru import logger
from prometheus_client import REGISTRY, start_http_server

from logshipper import LogShipper, LoguruSink, ShipperHandler, ShipperSettings


def main():
    start_http_server(8000)
    logger.info("📊 Prometheus metrics available at http://localhost:8000/metrics")

    settings = ShipperSettings(
        server_spec=os.environ.get("LOGSHIPPER_SERVER_SPEC", "127.0.0.1:5151"),
        queue_capacity=500,
        overflow_policy="evict-oldest",
        reconnect_backoff={"initial": 0.2, "max": 5.0, "jitter": 0.25},
    )
    logger.info(f"⚙️  Shipping to {settings.server_spec} (capacity={settings.queue_capacity})")

    with LogShipper(settings, registry=REGISTRY) as shipper:
        sink_id = logger.add(LoguruSink(shipper), level="INFO")
        logging.getLogger("demo.stdlib").addHandler(ShipperHandler(shipper))
        logging.getLogger("demo.stdlib").setLevel(logging.INFO)

        for i in range(1, 201):
            logger.bind(iteration=i).info(f"loguru event {i}")
            if i % 10 == 0:
                logging.getLogger("demo.stdlib").warning("stdlib event %d", i)
            if i % 50 == 0:
                h = shipper.health()
                logger.info(
                    f"Progress: {i}/200 | Queue: {h.queue_size}/{h.capacity} | "
                    f"Connection: {h.connection_state} -> {h.endpoint}"
                )
            time.sleep(0.01)

        shipper.flush(timeout=2.0)
        logger.remove(sink_id)
        snap = shipper.metrics_snapshot()
        logger.info(
            f"📊 Final: submitted={snap.submitted} sent={snap.sent} "
            f"dropped={snap.dropped_total} reconnects={snap.reconnects}"
        )

    logger.info("✅ Shipper demo complete")


if __name__ == "__main__":
    main()
