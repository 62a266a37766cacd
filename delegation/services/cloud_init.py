"""Cloud-init rendering for job VMs.

Each job VM boots from a template and is seeded with a cloud-config document
that writes the manifest, the job runner script and any manifest files, then
runs the runner. The runner reports back to the callback endpoint:

- ``POST {callback}/callback/{job_id}/heartbeat`` every 30 seconds
- ``POST {callback}/callback/{job_id}/status`` with an output tail
  (``detailed``/``streaming`` status modes only)
- ``POST {callback}/callback/{job_id}/complete`` once the agent exits
"""

import base64
import json
import shlex

import yaml

from delegation.jobs.manifest import JobFile, JobManifest
from delegation.jobs.types import AgentType, StatusMode

RUNNER_DIR = "/opt/job-runner"
HEARTBEAT_INTERVAL_SECONDS = 30
PROGRESS_TAIL_BYTES = 4096


def _b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def _file_content_b64(job_file: JobFile) -> str:
    if job_file.encoding == "text":
        return _b64(job_file.content)
    return job_file.content


def build_agent_command(manifest: JobManifest) -> str:
    """Shell command that launches the agent for this manifest."""
    agent = manifest.agent
    if manifest.agent_type == AgentType.CLAUDE:
        parts = ["claude", "--print"]
        if agent and agent.claude_model:
            parts += ["--model", shlex.quote(agent.claude_model)]
        parts.append(shlex.quote(manifest.task))
        return " ".join(parts)

    if agent and agent.command:
        return agent.command

    if manifest.agent_type == AgentType.SCRIPT:
        return f"bash -c {shlex.quote(manifest.task)}"

    # custom agents without a command have nothing to run
    return "bash -c " + shlex.quote("echo 'custom agent requires agent.command' >&2; exit 2")


def build_runner_script(
    job_id: str,
    manifest: JobManifest,
    callback_url: str,
    default_timeout: int,
) -> str:
    """Render the bash runner executed inside the VM."""
    timeout = manifest.timeout or default_timeout
    status_mode = (manifest.status_mode or StatusMode.SIMPLE).value
    env_lines = "\n".join(
        f"export {name}={shlex.quote(value)}"
        for name, value in (manifest.env or {}).items()
    )

    return f"""#!/bin/bash
set -u

JOB_ID={shlex.quote(job_id)}
CALLBACK_URL={shlex.quote(callback_url)}
TIMEOUT={int(timeout)}
STATUS_MODE={shlex.quote(status_mode)}

# Job environment
{env_lines}

post_json() {{
  curl -s -X POST "$CALLBACK_URL/callback/$JOB_ID/$1" \\
    -H "Content-Type: application/json" \\
    -d "$2" || true
}}

send_complete() {{
  local status=$1 exit_code=$2
  post_json complete "$(jq -n \\
    --arg job_id "$JOB_ID" \\
    --arg status "$status" \\
    --argjson exit_code "$exit_code" \\
    --rawfile output "$OUTPUT_FILE" \\
    --rawfile error "$ERROR_FILE" \\
    --argjson duration "$SECONDS" \\
    '{{job_id: $job_id, status: $status, exit_code: $exit_code, output: $output,
      error: (if $error == "" then null else $error end), duration_seconds: $duration}}')"
}}

send_progress() {{
  post_json status "$(jq -n \\
    --arg job_id "$JOB_ID" \\
    --arg progress "running (${{SECONDS}}s elapsed)" \\
    --arg output "$(tail -c {PROGRESS_TAIL_BYTES} "$OUTPUT_FILE")" \\
    '{{job_id: $job_id, progress: $progress, output: $output}}')"
}}

report_liveness() {{
  while true; do
    sleep {HEARTBEAT_INTERVAL_SECONDS}
    if [ "$STATUS_MODE" = "simple" ]; then
      curl -s -X POST "$CALLBACK_URL/callback/$JOB_ID/heartbeat" || true
    else
      send_progress
    fi
  done
}}

cd {RUNNER_DIR}
OUTPUT_FILE=$(mktemp)
ERROR_FILE=$(mktemp)

report_liveness &
LIVENESS_PID=$!
trap 'kill $LIVENESS_PID 2>/dev/null || true' EXIT

timeout "$TIMEOUT" {build_agent_command(manifest)} > "$OUTPUT_FILE" 2> "$ERROR_FILE"
EXIT_CODE=$?

if [ $EXIT_CODE -eq 0 ]; then
  send_complete success $EXIT_CODE
else
  send_complete failed $EXIT_CODE
fi
"""


def _write_file(path: str, content_b64: str, permissions: str = "0644") -> dict:
    return {
        "path": path,
        "content": content_b64,
        "encoding": "b64",
        "permissions": permissions,
    }


def build_cloud_config(
    job_id: str,
    manifest: JobManifest,
    callback_url: str,
    default_timeout: int,
) -> str:
    """Render the cloud-config document that bootstraps a job VM."""
    runner = build_runner_script(job_id, manifest, callback_url, default_timeout)
    manifest_json = json.dumps(manifest.to_wire())

    write_files = [
        _write_file(f"{RUNNER_DIR}/manifest.json", _b64(manifest_json)),
        _write_file(f"{RUNNER_DIR}/run.sh", _b64(runner), permissions="0755"),
    ]
    for job_file in manifest.files or []:
        write_files.append(_write_file(job_file.path, _file_content_b64(job_file)))

    doc = {"write_files": write_files, "runcmd": [f"{RUNNER_DIR}/run.sh"]}
    return "#cloud-config\n" + yaml.safe_dump(doc, sort_keys=False, width=1 << 16)
