#!/usr/bin/env python3
"""
E2E Test Worker - connects, then dies as soon as a request arrives.

Used to check that a request in flight when the worker dies fails at once
instead of hanging.
"""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "..", "python", "src"))

from tripleslash.core.channel import Channel
from tripleslash.core.framing import read_frame


def main():
    channel = Channel.connect(sys.argv[1], timeout=5.0)
    read_frame(channel)
    os._exit(1)


if __name__ == "__main__":
    main()
