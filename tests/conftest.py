"""Shared fixtures: a scripted backend and sample diffs."""

import pytest

from pr_analyzer.llm import BackendResponse, TokenUsage


class FakeBackend:
    """Backend whose replies are scripted per stage tool name.

    A reply may be a string or an exception instance, which is raised.
    Tools without a script reply with empty text.
    """

    provider = "fake"
    model = "fake-model"

    def __init__(self, responses=None, usage=TokenUsage(100, 50)):
        self.responses = dict(responses or {})
        self.usage = usage
        self.calls = []

    def invoke(self, prompt, tool="unknown"):
        self.calls.append((tool, prompt))
        reply = self.responses.get(tool, "")
        if isinstance(reply, Exception):
            raise reply
        return BackendResponse(text=reply, usage=self.usage)

    def tools_called(self):
        return [tool for tool, _prompt in self.calls]


@pytest.fixture
def fake_backend():
    def _make(responses=None, usage=TokenUsage(100, 50)):
        return FakeBackend(responses, usage)

    return _make


SMALL_TS_DIFF = """\
diff --git a/src/a.ts b/src/a.ts
index 1111111..2222222 100644
--- a/src/a.ts
+++ b/src/a.ts
@@ -1,2 +1,5 @@
 const a = 1;
+const b = 2;
+const c = 3;
+const d = 4;
 export default a;
"""

CONFIG_DIFF = """\
diff --git a/app/config.py b/app/config.py
index 1111111..2222222 100644
--- a/app/config.py
+++ b/app/config.py
@@ -1,3 +1,4 @@
 DEBUG = False
-TIMEOUT = 10
+TIMEOUT = 30
+RETRIES = 3
 HOST = "localhost"
diff --git a/app/views.py b/app/views.py
index 3333333..4444444 100644
--- a/app/views.py
+++ b/app/views.py
@@ -5,2 +5,3 @@
 def index():
+    log("index")
     return render()
"""

CREDENTIAL_DIFF = """\
diff --git a/app/settings.py b/app/settings.py
index 1111111..2222222 100644
--- a/app/settings.py
+++ b/app/settings.py
@@ -1,1 +1,2 @@
 DEBUG = False
+API_KEY = "sk-live-1234"
"""


@pytest.fixture
def small_ts_diff():
    return SMALL_TS_DIFF


@pytest.fixture
def config_diff():
    return CONFIG_DIFF


@pytest.fixture
def credential_diff():
    return CREDENTIAL_DIFF
