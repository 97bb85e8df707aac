#!/usr/bin/env python3
"""
Celery worker health check script.

The worker runs every docker build/run/stop, so it is only healthy when it
can reach both its broker and the Docker daemon. Worker ping is not used:
a worker busy with a long build does not answer inspect.ping() in time.

Health check passes if:
1. Redis (the broker) is reachable
2. The Docker daemon answers `docker version`
3. The celery process is running
"""
import os
import subprocess
import sys

DOCKER_BINARY = os.getenv("DOCKER_BINARY", "docker")


def check_redis():
    """Check if Redis broker is reachable."""
    try:
        import redis
        redis_url = os.getenv("REDIS_URL", "redis://redis:6379/0")
        client = redis.from_url(redis_url, socket_timeout=5)
        client.ping()
        return True
    except Exception as e:
        print(f"Redis check failed: {e}", file=sys.stderr)
        return False


def check_docker():
    """Check that the Docker daemon behind the mounted socket responds."""
    try:
        result = subprocess.run(
            [DOCKER_BINARY, "version", "--format", "{{.Server.Version}}"],
            capture_output=True,
            timeout=10,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        print(f"Docker check failed: {e}", file=sys.stderr)
        return False

    if result.returncode != 0:
        print(f"Docker check failed: {result.stderr.decode(errors='replace').strip()}", file=sys.stderr)
        return False
    return True


def check_celery_process():
    """Check if a celery worker process is running."""
    try:
        result = subprocess.run(
            ["pgrep", "-f", "celery.*worker"],
            capture_output=True,
            timeout=5
        )
        return result.returncode == 0
    except FileNotFoundError:
        # pgrep not available, skip this check
        return True


def main():
    for name, check in (("redis", check_redis), ("docker", check_docker), ("celery", check_celery_process)):
        if not check():
            print(f"Worker unhealthy: {name} check failed", file=sys.stderr)
            return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
