#!/usr/bin/env python3
import json
import sys
import time


def _json_dumps(value: object) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def main() -> int:
    payload = json.load(sys.stdin)
    method_name = payload.get("method_name", "")
    if method_name == "crash":
        return 3
    if method_name == "stall":
        time.sleep(10)
    if method_name == "garbage":
        sys.stdout.write("not json")
        return 0
    args = payload.get("args", [])
    result = {
        "code": f"return {json.dumps(args)}",
        "dependencies": [],
    }
    sys.stdout.write(_json_dumps(result))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
