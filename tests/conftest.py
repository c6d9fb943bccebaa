"""
Pytest configuration and fixtures for esm_mirror tests
"""

import threading
import time
from collections import Counter

import pytest

from esm_mirror.errors import FetchError


class FakeFetcher:
    """In-memory stand-in for Fetcher that records every call."""

    def __init__(self, modules, delay=0.0, fail=()):
        self.modules = dict(modules)
        self.delay = delay
        self.fail = set(fail)
        self.calls = Counter()
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def fetch(self, url):
        with self._lock:
            self.calls[url] += 1
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            if url in self.fail or url not in self.modules:
                raise FetchError(url, "HTTP 404 - not found", status=404)
            body = self.modules[url]
            return body.encode("utf-8") if isinstance(body, str) else body
        finally:
            with self._lock:
                self.in_flight -= 1


class FakeTransformClient:
    """Returns the submitted code unchanged and records each request."""

    def __init__(self, outputs=None):
        self.outputs = dict(outputs or {})
        self.calls = []

    def transform(self, code, filename, import_map):
        self.calls.append((filename, dict(import_map)))
        return self.outputs.get(filename, code), ""


@pytest.fixture
def fake_transform():
    return FakeTransformClient()


@pytest.fixture
def react_modules():
    """A two-module graph shaped like an esm.sh wrapper and its build."""
    return {
        "https://cdn.example/react@19.0.0": (
            '/* esm.sh - react@19.0.0 */\n'
            'export * from "/react@19.0.0/es2022/react.mjs";\n'
            'export { default } from "/react@19.0.0/es2022/react.mjs";\n'
        ),
        "https://cdn.example/react@19.0.0/es2022/react.mjs": 'var e="19.0.0";export{e as version};\n',
    }


@pytest.fixture
def sample_project(tmp_path):
    """A small app: index.html with an import map and a compile script."""
    root = tmp_path / "app"
    (root / "components").mkdir(parents=True)
    (root / "public").mkdir()
    (root / "index.html").write_text(
        """<!DOCTYPE html>
<html>
<head>
<script type="importmap">
{"imports": {"react": "https://cdn.example/react@19.0.0"}}
</script>
</head>
<body>
<div id="root"></div>
<script type="module" src="https://esm.sh/x" href="./main.tsx"></script>
</body>
</html>
""",
        encoding="utf-8",
    )
    (root / "main.tsx").write_text(
        'import React from "react";\n'
        'import App from "./components/App.tsx";\n'
        'import "./style.css";\n'
        "console.log(React, App);\n",
        encoding="utf-8",
    )
    (root / "components" / "App.tsx").write_text(
        'import { helper } from "../util";\nexport default function App() { return helper(); }\n',
        encoding="utf-8",
    )
    (root / "util.ts").write_text("export const helper = () => 1;\n", encoding="utf-8")
    (root / "style.css").write_text("body { margin: 0; }\n", encoding="utf-8")
    (root / "public" / "logo.svg").write_text("<svg></svg>", encoding="utf-8")
    return root
