"""Unit tests for locale files and run reports."""
import json

from forge_i18n.app_config import AppConfig
from forge_i18n.diagnostics import DeferredBinding
from forge_i18n.report_writer import (
    load_translation_table,
    render_top_level_warnings,
    write_detail_file,
    write_locale_files,
    write_run_report,
    write_top_level_warnings,
)
from forge_i18n.translation_table import TranslationEntry, TranslationTable


def _read(path):
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def _table(**texts):
    table = TranslationTable()
    for key, text in texts.items():
        table.add(key.replace("__", "."), TranslationEntry(text, "src/pages/home/index.tsx"))
    return table


class TestLocaleFiles:

    def test_source_and_target_locales(self, tmp_path):
        config = AppConfig(project_root=str(tmp_path))
        table = _table(home__title="首页", home__save="保存")

        counts = write_locale_files(config, table)

        assert _read(config.output_path("zh_CN")) == {"home.title": "首页", "home.save": "保存"}
        assert _read(config.output_path("en_US")) == {"home.title": "", "home.save": ""}
        assert counts == {"zh_CN": 2, "en_US": 2}
        assert (tmp_path / "locales" / "zh-CN" / "translation.json").exists()

    def test_existing_translations_are_kept(self, tmp_path):
        config = AppConfig(project_root=str(tmp_path))
        en_path = tmp_path / "locales" / "en-US" / "translation.json"
        en_path.parent.mkdir(parents=True)
        en_path.write_text(json.dumps({"home.title": "Home", "home.save": "  ", "old.key": "Old"}), encoding="utf-8")

        counts = write_locale_files(config, _table(home__title="首页", home__save="保存"))

        assert _read(str(en_path)) == {"home.title": "Home", "home.save": "", "old.key": "Old"}
        assert counts["en_US"] == 0

    def test_corrupt_locale_file_is_replaced(self, tmp_path, caplog):
        config = AppConfig(project_root=str(tmp_path))
        zh_path = tmp_path / "locales" / "zh-CN" / "translation.json"
        zh_path.parent.mkdir(parents=True)
        zh_path.write_text("{oops", encoding="utf-8")

        write_locale_files(config, _table(home__title="首页"))

        assert _read(str(zh_path)) == {"home.title": "首页"}
        assert "will be overwritten" in caplog.text


class TestDetailAndReport:

    def test_detail_file_seeds_next_run(self, tmp_path):
        config = AppConfig(project_root=str(tmp_path))
        write_detail_file(config, _table(home__title="首页"))

        table = load_translation_table(config)

        assert table.find_key("首页") == "home.title"

    def test_no_detail_file_gives_empty_table(self, tmp_path):
        assert len(load_translation_table(AppConfig(project_root=str(tmp_path)))) == 0

    def test_run_report(self, tmp_path):
        config = AppConfig(project_root=str(tmp_path), namespace="app")
        path = write_run_report(config, {"summary": {"totalFiles": 1}})
        assert path.endswith("app.report.json")
        assert _read(path) == {"summary": {"totalFiles": 1}}


class TestTopLevelWarnings:

    def test_no_bindings(self):
        assert "No module-level constants need manual changes." in render_top_level_warnings([])

    def test_bindings_table(self, tmp_path):
        bindings = [
            DeferredBinding("TITLE", "status.title", str(tmp_path / "src" / "b.ts"), 3, 0),
            DeferredBinding("LABEL", "status.label", str(tmp_path / "src" / "a.ts"), 7, 0),
        ]

        markdown = render_top_level_warnings(bindings, str(tmp_path))

        lines = markdown.splitlines()
        assert lines[0] == "# Top-level lookup bindings"
        assert "| File | Constant | Line | Key |" in lines
        rows = [line for line in lines if line.startswith("| src/")]
        assert rows == [
            "| src/a.ts | LABEL | 7 | `status.label` |",
            "| src/b.ts | TITLE | 3 | `status.title` |",
        ]

    def test_write_creates_parent_folder(self, tmp_path):
        config = AppConfig(project_root=str(tmp_path))
        path = write_top_level_warnings(config, [])
        assert path == str(tmp_path / "docs" / "i18n-top-level-warnings.md")
        assert (tmp_path / "docs" / "i18n-top-level-warnings.md").read_text(encoding="utf-8").startswith("# Top")
