"""
conftest.py

The API reads its limits and key from env vars at import time, so they are
set here before any test module imports api.app.
"""

import os
import tempfile

_tmp = tempfile.mkdtemp(prefix="reconciler-tests-")

os.environ.setdefault("API_KEY", "test-key")
os.environ.setdefault("RATE_LIMIT_READ_RPM", "100000")
os.environ.setdefault("RATE_LIMIT_WRITE_RPM", "100000")
os.environ.setdefault("MAX_CONCURRENT_JOBS", "100")
os.environ.setdefault("MAX_JOBS_PER_IP", "100")
os.environ.setdefault("RECONCILER_AUDIT_LOG", os.path.join(_tmp, "audit.log"))
os.environ.setdefault("RECONCILER_STATE_FILE", os.path.join(_tmp, "state.json"))
os.environ.pop("RECONCILER_CLOUD_FILE", None)
