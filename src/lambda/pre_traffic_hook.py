import logging
import os
import time
import urllib.request

import boto3

logger = logging.getLogger()
logger.setLevel(logging.INFO)

ATTEMPTS = 12
DELAY_SECONDS = 5


def probe(url: str, timeout=2):
    req = urllib.request.Request(url, method="GET")
    with urllib.request.urlopen(req, timeout=timeout) as resp:
        code = resp.getcode()
        body = resp.read(200).decode("utf-8", errors="ignore")
        return code, body


def check_test_traffic(url: str, attempts: int = ATTEMPTS, delay: int = DELAY_SECONDS) -> str | None:
    """Probe the test listener until it answers; return the last error, or None on success."""
    last_error = None
    for attempt in range(1, attempts + 1):
        try:
            code, _ = probe(url)
            if 200 <= code < 400:
                logger.info("Test traffic healthy on attempt %d (status %d)", attempt, code)
                return None
            last_error = f"Unexpected status: {code}"
        except Exception as e:
            last_error = str(e)

        logger.info("Attempt %d/%d against %s failed: %s", attempt, attempts, url, last_error)
        if attempt < attempts:
            time.sleep(delay)

    return last_error


def handler(event, context):
    # CodeDeploy invokes this at a lifecycle event of the blue/green hook and
    # waits for the status report below.
    deployment_id = event["DeploymentId"]
    execution_id = event["LifecycleEventHookExecutionId"]

    url = os.environ.get("TEST_URL")
    error = check_test_traffic(url) if url else "TEST_URL not set"
    status = "Failed" if error else "Succeeded"

    boto3.client("codedeploy").put_lifecycle_event_hook_execution_status(
        deploymentId=deployment_id,
        lifecycleEventHookExecutionId=execution_id,
        status=status,
    )

    if error:
        logger.error("Test traffic validation failed: %s", error)
    return {"status": status, "error": error}
