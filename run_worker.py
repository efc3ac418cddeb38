"""
Temporal workers for the billing core.
Order worker and billing (daily job) worker run on separate task queues.
"""
import asyncio
import sys
import os
import logging

sys.path.append(os.path.dirname(os.path.abspath(__file__)))

import config

logging.basicConfig(
    level=config.LOG_LEVEL,
    format='%(levelname)s: %(message)s'
)
# show workflow logs but hide noise
logging.getLogger('temporalio').setLevel(logging.ERROR)
logging.getLogger('temporalio.worker').setLevel(logging.ERROR)
logging.getLogger('temporalio.client').setLevel(logging.ERROR)
logging.getLogger('temporalio.activity').setLevel(logging.ERROR)
logging.getLogger('temporalio.workflow').setLevel(logging.INFO)  # Show workflow logs
logging.getLogger('httpx').setLevel(logging.WARNING)

from temporalio.client import Client
from temporalio.worker import Worker

from activities import (
    confirm_payment_activity, provision_order_activity, cancel_order_activity,
    generate_renewal_invoices_activity, send_reminders_activity, suspend_overdue_activity
)
from workflows import OrderWorkflow, DailyJobWorkflow


async def run_order_worker(client: Client):
    """Run the order processing worker."""
    worker = Worker(
        client,
        task_queue=config.ORDER_TASK_QUEUE,
        workflows=[OrderWorkflow],
        activities=[
            confirm_payment_activity,
            provision_order_activity,
            cancel_order_activity
        ]
    )

    print(f"Starting Order Worker on task queue: {config.ORDER_TASK_QUEUE}")
    await worker.run()


async def run_billing_worker(client: Client):
    """Run the daily billing job worker on its own task queue."""
    worker = Worker(
        client,
        task_queue=config.BILLING_TASK_QUEUE,
        workflows=[DailyJobWorkflow],
        activities=[
            generate_renewal_invoices_activity,
            send_reminders_activity,
            suspend_overdue_activity
        ]
    )

    print(f"Starting Billing Worker on task queue: {config.BILLING_TASK_QUEUE}")
    await worker.run()


async def main():
    """Run both workers concurrently."""
    print("Starting billing core workers...")
    client = await Client.connect(config.TEMPORAL_ADDRESS, namespace=config.TEMPORAL_NAMESPACE)

    await asyncio.gather(
        run_order_worker(client),
        run_billing_worker(client)
    )

if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nWorkers stopped by user")
    except Exception as e:
        print(f"Worker error: {e}")
        sys.exit(1)
