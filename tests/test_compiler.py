"""
Tests for the transform client and the local compiler
"""

import json

import pytest
import responses

from conftest import FakeTransformClient
from esm_mirror.compiler import LocalCompiler, TransformClient, compiled_name
from esm_mirror.errors import TransformError
from esm_mirror.fetch import build_session
from esm_mirror.settings import Settings

TRANSFORM_URL = "https://esm.sh/transform"
MODULE_MAP = {"react": "/cdn.example/react@19.0.0/index.js"}


@pytest.fixture
def client():
    return TransformClient(build_session(), TRANSFORM_URL, target="es2022", timeout=5)


def make_compiler(out, client, **kwargs):
    kwargs.setdefault("cdn_host", "esm.sh")
    return LocalCompiler(client, out, MODULE_MAP, **kwargs)


class TestTransformClient:
    """Test requests to the transform endpoint"""

    @responses.activate
    def test_payload_and_result(self, client):
        seen = {}

        def callback(request):
            seen.update(json.loads(request.body))
            return 200, {}, json.dumps({"code": "compiled();", "map": "{}"})

        responses.add_callback(
            responses.POST, TRANSFORM_URL, callback=callback, content_type="application/json"
        )
        code, source_map = client.transform("<App />", "main.tsx", MODULE_MAP)

        assert (code, source_map) == ("compiled();", "{}")
        assert seen["lang"] == "tsx"
        assert seen["filename"] == "main.tsx"
        assert seen["target"] == "es2022"
        assert seen["importMap"] == {"imports": MODULE_MAP}
        assert seen["jsxImportSource"] == "react"
        assert seen["minify"] is False

    @responses.activate
    def test_no_jsx_source_for_ts(self, client):
        responses.add(responses.POST, TRANSFORM_URL, json={"code": "x"})
        client.transform("let a: number = 1;", "util.ts", {})
        body = json.loads(responses.calls[0].request.body)
        assert body["lang"] == "ts"
        assert "jsxImportSource" not in body

    @responses.activate
    def test_unsupported_extension(self, client):
        with pytest.raises(TransformError) as exc:
            client.transform("hello", "notes.txt", {})
        assert "unsupported file type .txt" in str(exc.value)
        assert len(responses.calls) == 0

    @responses.activate
    def test_service_error(self, client):
        responses.add(responses.POST, TRANSFORM_URL, status=400, body="Unexpected token")
        with pytest.raises(TransformError) as exc:
            client.transform("let = ;", "bad.ts", {})
        assert exc.value.status == 400
        assert "Unexpected token" in str(exc.value)

    @responses.activate
    def test_invalid_json(self, client):
        responses.add(responses.POST, TRANSFORM_URL, body="<html>oops</html>")
        with pytest.raises(TransformError):
            client.transform("let a = 1;", "a.js", {})

    @responses.activate
    def test_missing_code(self, client):
        responses.add(responses.POST, TRANSFORM_URL, json={"error": "nope"})
        with pytest.raises(TransformError):
            client.transform("let a = 1;", "a.js", {})

    def test_from_settings(self):
        c = TransformClient.from_settings(
            Settings(cdn_url="https://cdn.example/", minify=True, target="es2020", jsx_import_source="preact")
        )
        assert c.url == "https://cdn.example/transform"
        assert (c.minify, c.target, c.jsx_import_source) == (True, "es2020", "preact")


class TestLocalCompiler:
    """Test breadth-first compilation of application sources"""

    def test_compiles_graph_once(self, sample_project, tmp_path, fake_transform):
        out = tmp_path / "dist"
        result = make_compiler(out, fake_transform).compile(sample_project / "main.tsx", "main.tsx")

        assert result.compiled == ["main.js", "components/App.js", "util.js"]
        assert result.copied == ["style.css"]
        assert [c[0] for c in fake_transform.calls] == ["main.tsx", "components/App.tsx", "util.ts"]
        main = (out / "main.js").read_text()
        assert 'import App from "./components/App.js";' in main
        assert 'import React from "react";' in main
        assert (out / "style.css").read_text() == "body { margin: 0; }\n"
        assert (out / "util.js").exists()

    def test_import_map_is_sent(self, sample_project, tmp_path, fake_transform):
        compiler = make_compiler(tmp_path / "dist", fake_transform, base_path="/app")
        compiler.compile(sample_project / "util.ts", "util.ts")
        assert fake_transform.calls[0][1] == {"react": "/app/cdn.example/react@19.0.0/index.js"}

    def test_cycle_terminates(self, tmp_path, fake_transform):
        src = tmp_path / "src"
        src.mkdir()
        (src / "a.ts").write_text('import "./b.ts";\n')
        (src / "b.ts").write_text('import "./a.ts";\n')
        result = make_compiler(tmp_path / "dist", fake_transform).compile(src / "a.ts", "a.ts")
        assert result.compiled == ["a.js", "b.js"]

    def test_absolute_imports_point_at_mirror(self, tmp_path):
        src = tmp_path / "main.jsx"
        src.write_text("<div />")
        client = FakeTransformClient(
            {"main.jsx": 'import { jsx } from "/react@19.0.0/jsx-runtime";\njsx("div");\n'}
        )
        make_compiler(tmp_path / "dist", client, base_path="/app").compile(src, "main.jsx")
        code = (tmp_path / "dist" / "main.js").read_text()
        assert 'from "/app/esm.sh/react@19.0.0/jsx-runtime.js"' in code

    def test_import_map_values_are_not_prefixed_again(self, tmp_path):
        src = tmp_path / "main.jsx"
        src.write_text("<App />")
        client = FakeTransformClient(
            {
                "main.jsx": (
                    'import React from "/cdn.example/react@19.0.0/index.js";\n'
                    'import { jsx } from "/react@19.0.0/jsx-runtime";\n'
                )
            }
        )
        make_compiler(tmp_path / "dist", client).compile(src, "main.jsx")
        code = (tmp_path / "dist" / "main.js").read_text()
        assert 'import React from "/cdn.example/react@19.0.0/index.js";' in code
        assert 'from "/esm.sh/react@19.0.0/jsx-runtime.js"' in code

    def test_mirrored_hosts_with_base_path(self, tmp_path):
        src = tmp_path / "main.js"
        src.write_text("x")
        client = FakeTransformClient(
            {
                "main.js": (
                    'import a from "/app/cdn.example/react@19.0.0/index.js";\n'
                    'import b from "/app/other.example_8443/b@2.0.0/index.js";\n'
                )
            }
        )
        compiler = make_compiler(
            tmp_path / "dist", client, base_path="/app", hosts={"other.example_8443"}
        )
        assert compiler.mirrored_hosts == {"cdn.example", "other.example_8443"}
        compiler.compile(src, "main.js")
        code = (tmp_path / "dist" / "main.js").read_text()
        assert '"/app/cdn.example/react@19.0.0/index.js"' in code
        assert '"/app/other.example_8443/b@2.0.0/index.js"' in code

    def test_completed_import_gets_js_extension(self, sample_project, tmp_path, fake_transform):
        out = tmp_path / "dist"
        make_compiler(out, fake_transform).compile(sample_project / "main.tsx", "main.tsx")
        app = (out / "components" / "App.js").read_text()
        assert 'import { helper } from "../util.js";' in app

    def test_unresolved_extensionless_import_unchanged(self, tmp_path, fake_transform):
        (tmp_path / "main.ts").write_text('import "./missing";\n')
        with pytest.raises(TransformError):
            make_compiler(tmp_path / "dist", fake_transform).compile(tmp_path / "main.ts", "main.ts")
        assert (tmp_path / "dist" / "main.js").read_text() == 'import "./missing";\n'

    def test_shared_visited_set(self, sample_project, tmp_path, fake_transform):
        compiler = make_compiler(tmp_path / "dist", fake_transform)
        visited = set()
        compiler.compile(sample_project / "main.tsx", "main.tsx", visited)
        second = compiler.compile(sample_project / "util.ts", "util.ts", visited)
        assert second.compiled == []
        assert [c[0] for c in fake_transform.calls].count("util.ts") == 1

    def test_falls_back_one_directory_up(self, tmp_path, fake_transform):
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "main.ts").write_text('import { s } from "./shared.ts";\n')
        (tmp_path / "shared.ts").write_text("export const s = 1;\n")
        result = make_compiler(tmp_path / "dist", fake_transform).compile(
            tmp_path / "src" / "main.ts", "main.ts"
        )
        assert result.compiled == ["main.js", "shared.js"]

    def test_import_leaving_project_is_skipped(self, tmp_path, fake_transform):
        (tmp_path / "main.ts").write_text('import "../outside.ts";\n')
        result = make_compiler(tmp_path / "dist", fake_transform).compile(tmp_path / "main.ts", "main.ts")
        assert result.compiled == ["main.js"]

    def test_missing_source(self, tmp_path, fake_transform):
        (tmp_path / "main.ts").write_text('import "./missing.ts";\n')
        with pytest.raises(TransformError) as exc:
            make_compiler(tmp_path / "dist", fake_transform).compile(tmp_path / "main.ts", "main.ts")
        assert exc.value.filename == "missing.ts"

    def test_source_maps(self, tmp_path):
        (tmp_path / "a.ts").write_text("let a = 1;")
        client = FakeTransformClient()
        client.transform = lambda code, filename, import_map: ("var a = 1;", '{"version":3}')
        make_compiler(tmp_path / "dist", client, source_maps=True).compile(tmp_path / "a.ts", "a.ts")
        assert (tmp_path / "dist" / "a.js.map").read_text() == '{"version":3}'

    def test_nested_entry_keeps_relative_layout(self, sample_project, tmp_path, fake_transform):
        out = tmp_path / "dist"
        result = make_compiler(out, fake_transform).compile(
            sample_project / "components" / "App.tsx", "components/App.tsx"
        )
        assert result.compiled == ["components/App.js", "util.js"]
        assert (out / "components" / "App.js").exists()


def test_compiled_name():
    assert compiled_name("components/App.tsx") == "components/App.js"
    assert compiled_name("main.ts") == "main.js"
