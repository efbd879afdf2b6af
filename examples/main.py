"""Sample job entrypoint.

Build it into an image whose default command runs this script; the worker
writes the job document to stdin and captures whatever the script prints.

    FROM python:3.12-slim
    COPY main.py /app/main.py
    CMD ["python", "/app/main.py"]
"""
import json
import os
import sys


def main():
    job = json.load(sys.stdin)
    task = job.get("task") or {}
    print("hello from job", job["job_id"])
    print("task:", json.dumps(task, sort_keys=True))
    print("GREETING =", os.environ.get("GREETING", "<unset>"))
    if task.get("fail"):
        print("failing on request", file=sys.stderr)
        sys.exit(int(task.get("exit_code", 1)))


if __name__ == "__main__":
    main()
