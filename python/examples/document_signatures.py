"""
Example: documenting Q# callables through a supervised worker.

Starts the signature worker, asks it about a few declarations (one of them
invalid), kills the worker halfway through to show the relaunch, and prints
the collected metrics at the end.

python document_signatures.py
"""

import os
import sys
import time

# Add src directory to path for imports
SRC_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src"))
sys.path.insert(0, SRC_DIR)

import psutil

from tripleslash import (
    SignatureClient,
    StructuredLogger,
    WorkerSupervisor,
    default_pretty_handler,
    load_config,
)

SIGNATURES = [
    "operation Foo (a : Int) : Unit { }",
    "function Add (x : Int, y : Int) : Int { return x + y; }",
    "newtype Pair = (Int, Int);",
    "operation ApplyTwice<'T> (op : ('T => Unit), (target : 'T, count : Int)) : Unit is Adj { }",
]


def document(client, signature):
    response = client.request_method_signature(signature)
    if response is None:
        print(f"  {signature!r}: no answer")
        return

    print(f"/// # Summary: {response.name}")
    for name in response.type_parameter_names:
        print(f"/// # Type Parameters: {name}")
    for name in response.parameter_names:
        print(f"/// # Input: {name}")
    if response.has_return_type:
        print("/// # Output")


def main():
    logger = StructuredLogger(handler=default_pretty_handler, component="host")

    # The worker imports tripleslash too
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [SRC_DIR, env.get("PYTHONPATH")]))

    with WorkerSupervisor(config=load_config(), env=env, logger=logger) as supervisor:
        client = SignatureClient(supervisor)

        for signature in SIGNATURES:
            document(client, signature)

        print("\nKilling the worker...")
        psutil.Process(supervisor.pid).kill()
        # Give the monitor a moment to notice the exit
        time.sleep(0.5)
        supervisor.wait_until_ready(timeout=5.0)

        document(client, SIGNATURES[0])

        metrics = supervisor.metrics.snapshot()
        print(f"\nRequests: {metrics.requests_total} ({metrics.requests_failed} failed)")
        print(f"Latency p50: {metrics.latency_p50_ms:.1f}ms")
        print(f"Launches: {metrics.worker_launches}, restarts: {metrics.worker_restarts}")


if __name__ == "__main__":
    main()
