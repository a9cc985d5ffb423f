#!/usr/bin/env python3
"""
Stand-in actuator worker speaking the same line protocol as
actuator_worker.py, with knobs for misbehaving.

Usage: fake_worker.py MODE [ARG]

    ok              reply OK to everything ("fail..." payloads get ERR)
    mute            MUTE -> MUTED, UNMUTE -> UNMUTED
    crash_once      exit on the first command if the marker file ARG does not
                    exist yet (it is created first), otherwise behave like ok
    no_ready        never print READY
    exit_early      exit with code 1 before READY
    malformed       reply with a line that has no sequence number
    stale           reply "0 STALE" before every real reply
    slow            sleep ARG seconds before replying

If FAKE_WORKER_LOG is set, every received payload is appended to that file.
"""

import os
import sys
import time


def reply(seq, token):
    sys.stdout.write(f"{seq} {token}\n")
    sys.stdout.flush()


def main():
    mode = sys.argv[1] if len(sys.argv) > 1 else "ok"
    arg = sys.argv[2] if len(sys.argv) > 2 else None
    log_path = os.environ.get("FAKE_WORKER_LOG")

    if mode == "exit_early":
        return 1
    if mode == "no_ready":
        time.sleep(30)
        return 0

    sys.stdout.write("READY\n")
    sys.stdout.flush()

    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        if line == "EXIT":
            break
        seq, _, payload = line.partition(" ")
        if log_path:
            with open(log_path, "a") as f:
                f.write(payload + "\n")

        if mode == "crash_once" and not os.path.exists(arg):
            open(arg, "w").close()
            return 3
        if mode == "malformed":
            sys.stdout.write("garbage\n")
            sys.stdout.flush()
            continue
        if mode == "stale":
            reply(0, "STALE")
        if mode == "slow":
            time.sleep(float(arg))
        if mode == "mute":
            reply(seq, {"MUTE": "MUTED", "UNMUTE": "UNMUTED"}.get(payload, "ERR"))
            continue
        reply(seq, "ERR" if payload.startswith("fail") else "OK")
    return 0


if __name__ == "__main__":
    sys.exit(main())
