"""Stand-in for a provider CLI: prints line-delimited JSON according to a mode.

Usage: fake_cli.py MODE [--resume THREAD]   (prompt on stdin)
"""

import json
import signal
import subprocess
import sys
import time


def emit(event):
    print(json.dumps(event), flush=True)


def main(argv):
    mode = argv[0] if argv else "ok"
    resume = argv[argv.index("--resume") + 1] if "--resume" in argv else None
    prompt = sys.stdin.read()

    if resume:
        emit({"type": "status", "text": f"resumed {resume}"})

    if mode == "ok":
        emit({"type": "init", "session_id": "thread-1"})
        emit({"type": "status", "text": "Using editor…"})
        return 0
    if mode == "echo":
        emit({"type": "status", "text": prompt})
        return 0
    if mode == "garbage":
        print("not json at all", flush=True)
        print("[1, 2, 3]", flush=True)
        print('{"type": "status", "text": "trunc', flush=True)
        print("", flush=True)
        emit({"type": "status", "text": "survived"})
        return 0
    if mode == "fail":
        emit({"type": "status", "text": "working"})
        print("boom", file=sys.stderr, flush=True)
        return 3
    if mode == "error":
        emit({"type": "error", "text": "turn failed"})
        emit({"type": "status", "text": "after error"})
        time.sleep(30)
        return 0
    if mode == "slow":
        emit({"type": "init", "session_id": "thread-slow"})
        emit({"type": "status", "text": "working"})
        time.sleep(30)
        emit({"type": "status", "text": "too late"})
        return 0
    if mode == "spawn":
        # A tool subprocess that inherits stdout and outlives a plain SIGTERM to the CLI.
        subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
        emit({"type": "status", "text": "working"})
        time.sleep(30)
        return 0
    if mode == "stubborn":
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
        emit({"type": "status", "text": "working"})
        time.sleep(30)
        return 0
    print(f"unknown mode {mode}", file=sys.stderr)
    return 2


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
