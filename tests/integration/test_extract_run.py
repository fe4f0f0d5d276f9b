"""
Integration tests for a full extraction run.

The runs use the real parser, the semantic key strategy and real files in a
temporary project; only AI naming is left out.
"""
import json
import logging
import os
import shutil
import tempfile
import unittest
from unittest.mock import patch

import pytest

from forge_i18n.app_config import AppConfig
from forge_i18n.extract import discover_files, expand_braces, is_ignored, run_extraction
from forge_i18n.key_generator import KeyGenerator


def _read_json(path):
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def _relative(root, paths):
    return sorted(os.path.relpath(p, str(root)).replace(os.sep, "/") for p in paths)


class TestDiscovery:

    def test_expand_braces(self):
        assert expand_braces("src/**/*.{ts,tsx}") == ["src/**/*.ts", "src/**/*.tsx"]
        assert expand_braces("{a,b}/{c,d}.js") == ["a/c.js", "a/d.js", "b/c.js", "b/d.js"]
        assert expand_braces("src/index.ts") == ["src/index.ts"]

    @pytest.mark.parametrize("path,expected", [
        ("node_modules/lib/index.js", True),
        ("src/node_modules/x.js", True),
        ("src/pages/home/index.test.tsx", True),
        ("src/types/global.d.ts", True),
        ("src/pages/home/index.tsx", False),
    ])
    def test_default_ignores(self, path, expected):
        assert is_ignored(path, AppConfig(project_root="/p").ignore_patterns) is expected

    def test_discover_files(self, js_project):
        config = AppConfig(project_root=str(js_project), input_patterns=["src/**/*.{ts,tsx}", "**/*.js"])
        assert _relative(js_project, discover_files(config)) == [
            "src/constants/status.ts",
            "src/pages/home/index.tsx",
            "src/utils/log.ts",
        ]


class TestExtractionRun:

    @pytest.mark.asyncio
    async def test_full_run(self, js_project):
        config = AppConfig(project_root=str(js_project))

        summary = await run_extraction(config, KeyGenerator(config))

        assert summary.files_processed == 3
        assert summary.errors == []
        assert _relative(js_project, summary.changed_files) == ["src/constants/status.ts", "src/pages/home/index.tsx"]

        zh = _read_json(config.output_path("zh_CN"))
        assert sorted(zh.values()) == sorted(["首页", "欢迎使用", "共 {total} 条", "已完成", "名称"])
        assert all(key.startswith(("home.", "status.")) for key in zh)
        en = _read_json(config.output_path("en_US"))
        assert set(en) == set(zh)
        assert set(en.values()) == {""}

        page = (js_project / "src/pages/home/index.tsx").read_text(encoding="utf-8")
        assert page.startswith("import intl from 'react-intl-universal';\nimport React from 'react';\n")
        assert "{ total }" in page
        assert '<div title="首页">' not in page

        log_source = (js_project / "src/utils/log.ts").read_text(encoding="utf-8")
        assert log_source == "export const log = (msg) => console.log('调试', msg)\n"

        report = _read_json(config.report_path("zh_CN"))
        assert report["summary"]["totalFiles"] == 3
        assert report["summary"]["changedFiles"] == 2
        assert report["summary"]["totalExtracted"] == 5
        assert report["summary"]["totalMissingSamples"] == 0
        assert report["keyReport"]["total"] == 5
        assert report["fileStats"]["src/utils/log.ts"]["unrecognizedSamples"][0]["reason"] == \
            "skipFunctionCall:console.log"

        detail = _read_json(config.detail_path("zh_CN"))
        assert {entry["text"] for entry in detail.values()} == set(zh.values())

        warnings = (js_project / "docs" / "i18n-top-level-warnings.md").read_text(encoding="utf-8")
        assert "| src/constants/status.ts | STATUS_TEXT | 1 |" in warnings

    @pytest.mark.asyncio
    async def test_second_run_changes_nothing(self, js_project):
        config = AppConfig(project_root=str(js_project))
        await run_extraction(config, KeyGenerator(config))
        first_zh = _read_json(config.output_path("zh_CN"))
        page = (js_project / "src/pages/home/index.tsx").read_text(encoding="utf-8")

        summary = await run_extraction(config, KeyGenerator(config))

        assert summary.changed_files == []
        assert _read_json(config.output_path("zh_CN")) == first_zh
        assert (js_project / "src/pages/home/index.tsx").read_text(encoding="utf-8") == page

    @pytest.mark.asyncio
    async def test_translations_survive_reruns(self, js_project):
        config = AppConfig(project_root=str(js_project))
        await run_extraction(config, KeyGenerator(config))
        en_path = config.output_path("en_US")
        en = {key: f"EN {key}" for key in _read_json(en_path)}
        with open(en_path, "w", encoding="utf-8") as f:
            json.dump(en, f)

        (js_project / "src/pages/home/extra.tsx").write_text(
            "export const Extra = () => <span>新增文本</span>\n", encoding="utf-8")
        await run_extraction(config, KeyGenerator(config))

        updated = _read_json(en_path)
        assert {k: v for k, v in updated.items() if k in en} == en
        assert sorted(v for k, v in updated.items() if k not in en) == [""]

    @pytest.mark.asyncio
    async def test_syntax_errors_are_reported_per_file(self, js_project, caplog):
        (js_project / "src/pages/home/broken.tsx").write_text("const a = <div>未闭合\n", encoding="utf-8")
        config = AppConfig(project_root=str(js_project))

        with caplog.at_level(logging.WARNING):
            summary = await run_extraction(config, KeyGenerator(config))

        assert _relative(js_project, [e.file for e in summary.errors]) == ["src/pages/home/broken.tsx"]
        assert "Syntax error" in summary.errors[0].message
        assert len(summary.changed_files) == 2
        assert "Failed to process src/pages/home/broken.tsx" in caplog.text

    @pytest.mark.asyncio
    async def test_unexpected_error_in_one_file_does_not_stop_the_run(self, tmp_path, caplog):
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "a.ts").write_text("export const a = '甲方'\n", encoding="utf-8")
        (tmp_path / "src" / "b.ts").write_text("export const b = '乙方'\n", encoding="utf-8")
        config = AppConfig(project_root=str(tmp_path))
        generator = KeyGenerator(config)
        assign_keys = generator.assign_keys

        async def failing_for_a(requests):
            if requests[0].context.file_path.endswith("/a.ts"):
                raise RuntimeError("boom")
            return await assign_keys(requests)

        generator.assign_keys = failing_for_a
        with caplog.at_level(logging.ERROR):
            summary = await run_extraction(config, generator)

        assert _relative(tmp_path, [e.file for e in summary.errors]) == ["src/a.ts"]
        assert summary.errors[0].message == "Unexpected error: boom"
        assert _relative(tmp_path, summary.changed_files) == ["src/b.ts"]
        assert list(_read_json(config.output_path("zh_CN")).values()) == ["乙方"]
        assert _read_json(config.report_path("zh_CN"))["summary"]["errors"] == 1
        assert "Unexpected error while processing src/a.ts" in caplog.text

    @pytest.mark.asyncio
    async def test_escapes_without_utf8_form_do_not_break_the_run(self, tmp_path):
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "a.ts").write_text(
            "export const lone = '\\uD800中文'\nexport const huge = '\\u{110000}文本'\n", encoding="utf-8")
        config = AppConfig(project_root=str(tmp_path))

        summary = await run_extraction(config, KeyGenerator(config))

        assert summary.errors == []
        assert sorted(_read_json(config.output_path("zh_CN")).values()) == ["\\uD800中文", "\\u{110000}文本"]
        detail = _read_json(config.detail_path("zh_CN"))
        assert sorted(entry["text"] for entry in detail.values()) == ["\\uD800中文", "\\u{110000}文本"]

    @pytest.mark.asyncio
    async def test_no_matching_files(self, tmp_path):
        config = AppConfig(project_root=str(tmp_path))
        summary = await run_extraction(config, KeyGenerator(config))
        assert summary.files_processed == 0
        assert not (tmp_path / "locales").exists()


class TestRunSideEffects(unittest.IsolatedAsyncioTestCase):
    """Dry runs and post commands on a throwaway project folder."""

    def setUp(self):
        self.project_root = tempfile.mkdtemp()
        os.makedirs(os.path.join(self.project_root, "src", "pages", "home"))
        self.page_path = os.path.join(self.project_root, "src", "pages", "home", "index.tsx")
        with open(self.page_path, "w", encoding="utf-8") as f:
            f.write("export const Home = () => <h1>欢迎使用</h1>\n")

    def tearDown(self):
        shutil.rmtree(self.project_root)

    async def test_dry_run_writes_nothing(self):
        config = AppConfig(project_root=self.project_root, dry_run=True, post_commands=["touch ran.txt"])

        summary = await run_extraction(config, KeyGenerator(config))

        self.assertEqual(summary.changed_files, [self.page_path])
        with open(self.page_path, encoding="utf-8") as f:
            self.assertEqual(f.read(), "export const Home = () => <h1>欢迎使用</h1>\n")
        self.assertFalse(os.path.exists(os.path.join(self.project_root, "locales")))
        self.assertFalse(os.path.exists(os.path.join(self.project_root, "ran.txt")))

    async def test_post_commands_run_in_project_root(self):
        config = AppConfig(project_root=self.project_root, post_commands=["echo done > ran.txt"])

        await run_extraction(config, KeyGenerator(config))

        with open(os.path.join(self.project_root, "ran.txt"), encoding="utf-8") as f:
            self.assertEqual(f.read().strip(), "done")

    async def test_failing_post_command_only_warns(self):
        config = AppConfig(project_root=self.project_root, post_commands=["exit 3", "echo after > ran.txt"])

        with self.assertLogs("forge_i18n.extract", level="WARNING") as captured:
            await run_extraction(config, KeyGenerator(config))

        self.assertTrue(any("exit code 3" in line for line in captured.output))
        self.assertTrue(os.path.exists(os.path.join(self.project_root, "ran.txt")))

    async def test_post_commands_use_the_shell(self):
        config = AppConfig(project_root=self.project_root, post_commands=["npm run lint"])

        with patch("forge_i18n.extract.subprocess.run") as mock_run:
            await run_extraction(config, KeyGenerator(config))

        mock_run.assert_called_once_with("npm run lint", shell=True, cwd=self.project_root, check=True)
