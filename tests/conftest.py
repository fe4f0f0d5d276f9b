import textwrap
from typing import Dict, List, Optional

import pytest

from forge_i18n.file_processor import transform_source
from forge_i18n.key_generator import KeyRequest
from forge_i18n.translation_table import TranslationTable


class StubKeyGenerator:
    """Answers with a fixed key per text; unknown texts get ``auto.key<n>``."""

    def __init__(self, keys: Optional[Dict[str, str]] = None):
        self.keys = keys or {}
        self.requests: List[KeyRequest] = []

    async def assign_keys(self, requests: List[KeyRequest]) -> List[Optional[str]]:
        answers = []
        for request in requests:
            self.requests.append(request)
            answers.append(self.keys.get(request.text, f"auto.key{len(self.requests)}"))
        return answers


@pytest.fixture
def table():
    return TranslationTable()


@pytest.fixture
def key_generator():
    return StubKeyGenerator()


@pytest.fixture
def make_generator():
    return StubKeyGenerator


@pytest.fixture
def transform(table):
    """Transform dedented source with a stub generator built from ``keys``."""
    async def _transform(source: str, keys: Optional[Dict[str, str]] = None,
                         file_path: str = 'src/pages/home/index.tsx', generator=None, **kwargs):
        generator = generator or StubKeyGenerator(keys)
        return await transform_source(textwrap.dedent(source).lstrip('\n'), file_path, table, generator, **kwargs)
    return _transform


@pytest.fixture
def js_project(tmp_path):
    """A small project tree with sources, a dependency folder and a test file."""
    files = {
        'src/pages/home/index.tsx': textwrap.dedent("""\
            import React from 'react';

            export default function Home({ total }) {
              return (
                <div title="首页">
                  <h1>欢迎使用</h1>
                  <p>共 {total} 条</p>
                </div>
              );
            }
            """),
        'src/constants/status.ts': textwrap.dedent("""\
            export const STATUS_TEXT = '已完成'
            export const columns = [{ title: '名称', dataIndex: 'name' }]
            """),
        'src/utils/log.ts': "export const log = (msg) => console.log('调试', msg)\n",
        'src/pages/home/index.test.tsx': "export const t = '测试文件'\n",
        'node_modules/lib/index.js': "module.exports = '依赖'\n",
    }
    for relative, content in files.items():
        path = tmp_path / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding='utf-8')
    return tmp_path
