"""
Command-line runner for the billing workflows.

    python run_workflow.py daily-job        run the daily job once and print its summary
    python run_workflow.py schedule         register the daily job on its cron schedule
    python run_workflow.py status ORDER_ID  query a running OrderWorkflow
    python run_workflow.py init-db          create the store tables
"""
import argparse
import asyncio
import json
import sys
import os
import time
import uuid

# Add the current directory to Python path for imports
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from temporalio.client import Client

import config
from database import close_db, init_db
from workflows import OrderWorkflow, DailyJobWorkflow, order_workflow_id

DAILY_JOB_ID = "daily-billing-job"


async def run_daily_job(client: Client) -> int:
    print("Running daily billing job")
    print("-" * 50)
    start_time = time.time()
    summary = await client.execute_workflow(
        DailyJobWorkflow.run,
        id=f"{DAILY_JOB_ID}-{uuid.uuid4().hex[:8]}",
        task_queue=config.BILLING_TASK_QUEUE,
    )
    print(f"Completed in {time.time() - start_time:.3f} seconds")
    print(json.dumps(summary, indent=2))
    return 0


async def schedule_daily_job(client: Client) -> int:
    handle = await client.start_workflow(
        DailyJobWorkflow.run,
        id=DAILY_JOB_ID,
        task_queue=config.BILLING_TASK_QUEUE,
        cron_schedule=config.DAILY_JOB_CRON,
    )
    print(f"Daily job registered as {handle.id} with cron '{config.DAILY_JOB_CRON}'")
    return 0


async def create_tables() -> int:
    await init_db()
    await close_db()
    print("Store tables created")
    return 0


async def show_order_status(client: Client, order_id: str) -> int:
    handle = client.get_workflow_handle(order_workflow_id(order_id))
    status = await handle.query(OrderWorkflow.get_status)
    print(json.dumps(status, indent=2))
    return 0


async def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Billing workflow runner")
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("daily-job", help="run the daily billing job once")
    subparsers.add_parser("schedule", help="register the daily job on its cron schedule")
    status_parser = subparsers.add_parser("status", help="query an order workflow")
    status_parser.add_argument("order_id")
    subparsers.add_parser("init-db", help="create the store tables")
    args = parser.parse_args(argv)

    if args.command == "init-db":
        return await create_tables()

    client = await Client.connect(config.TEMPORAL_ADDRESS, namespace=config.TEMPORAL_NAMESPACE)
    try:
        if args.command == "daily-job":
            return await run_daily_job(client)
        if args.command == "schedule":
            return await schedule_daily_job(client)
        return await show_order_status(client, args.order_id)
    except Exception as e:
        print(f"Workflow failed: {e}")
        return 1

if __name__ == "__main__":
    try:
        exit_code = asyncio.run(main())
        sys.exit(exit_code)
    except KeyboardInterrupt:
        print("\nStopped by user")
        sys.exit(1)
