#!/usr/bin/env python3
"""
E2E Test Worker - connects, reads requests, never answers.

Used to exercise the host's request timeout.
"""

import os
import sys
import time

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "..", "python", "src"))

from tripleslash.core.channel import Channel
from tripleslash.core.framing import read_frame


def main():
    channel = Channel.connect(sys.argv[1], timeout=5.0)
    while read_frame(channel) is not None:
        time.sleep(3600)
    return 0


if __name__ == "__main__":
    sys.exit(main())
