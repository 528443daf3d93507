from __future__ import annotations

import re
import secrets

_ALPHABET = "abcdefghjklmnpqrstuvwxyz23456789"
_MODULE_CODES = {
    "s3-bucket": "s3",
    "ec2-instance": "ec2",
    "ecr-repo": "ecr",
}

REQUEST_ID_PATTERN = re.compile(r"req_[a-z0-9_]+")


def module_code(module: str) -> str:
    key = module.strip().lower()
    if key in _MODULE_CODES:
        return _MODULE_CODES[key]
    compact = re.sub(r"[^a-z0-9]", "", key)
    return compact[:4] or "mod"


def generate_request_id(environment: str, module: str) -> str:
    env = re.sub(r"[^a-z0-9]", "", environment.strip().lower()) or "env"
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(6))
    return f"req_{env}_{module_code(module)}_{suffix}"


def branch_for_request(request_id: str) -> str:
    return f"request/{request_id}"
