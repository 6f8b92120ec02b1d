"""
Background Workers for ShipStation Connector

Workers:
- job_queue_worker: polls the job queue and runs due jobs (order
  notifications, inventory updates, shipment and webhook processing)
"""

from app.workers.job_queue_worker import run_job_queue_once, run_job_queue_worker_loop

__all__ = [
    "run_job_queue_once",
    "run_job_queue_worker_loop",
]
