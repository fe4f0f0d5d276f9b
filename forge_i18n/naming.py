"""Text and path heuristics used to name keys and classify source files."""
import hashlib
import re
from typing import Dict

TEXT_TYPES = ('confirm', 'error', 'success', 'action', 'input', 'label', 'text')
FILE_KINDS = ('component', 'data', 'router', 'constants', 'utils')

_SEMANTIC_NOISE_RE = re.compile(r'[，。！？；：、“”‘’"\'（）【】《》\s]')
_PLACEHOLDER_RE = re.compile(r'\{[^{}]*\}')
_DATA_CONFIG_RE = re.compile(r'/(data|constants|.*Data)\.tsx?$')
_SOURCE_SUFFIX_RE = re.compile(r'\.(tsx?|jsx?)$')


def _posix(file_path: str) -> str:
    return file_path.replace('\\', '/')


def identify_text_type(text: str) -> str:
    """Classify a UI text by its wording; the result becomes the key's type segment."""
    if re.search(r'[吗？?]$', text) or re.match(r'(确认|是否)', text):
        return 'confirm'
    if re.search(r'(不能|禁止|错误|失败|异常)', text):
        return 'error'
    if re.search(r'(成功|完成|已)', text):
        return 'success'
    if re.match(r'(删除|取消|确定|提交|保存|编辑|新增|修改|查看|下载|上传|导入|导出)', text):
        return 'action'
    if re.match(r'(请输入|请选择|请填写)', text):
        return 'input'
    if re.match(r'(用户|系统|管理|设置|配置)', text) and len(text) <= 10:
        return 'label'
    return 'text'


def extract_semantic(text: str, max_length: int) -> str:
    cleaned = _SEMANTIC_NOISE_RE.sub('', _PLACEHOLDER_RE.sub('', text))
    return cleaned[:max_length]


def text_hash(text: str, length: int) -> str:
    return hashlib.md5(text.encode('utf-8')).hexdigest()[:length]


def generate_semantic_key(text: str, hash_length: int = 4, max_semantic_length: int = 20,
                          use_type_prefix: bool = True) -> str:
    """Build ``<type>.<semantic>_<hash>`` (or ``<semantic>_<hash>``) without a namespace."""
    semantic = extract_semantic(text, max_semantic_length)
    if use_type_prefix:
        semantic = f"{identify_text_type(text)}.{semantic}"
    return f"{semantic}_{text_hash(text, hash_length)}"


def infer_namespace(file_path: str) -> str:
    """Namespace segment of keys found in ``file_path``."""
    path = _posix(file_path)
    match = re.search(r'pages/([^/]+)', path)
    if match:
        return match.group(1)
    if re.search(r'(components|hooks|router)/', path):
        return 'common'
    match = re.search(r'constants/([^/]+)', path)
    if match:
        return _SOURCE_SUFFIX_RE.sub('', match.group(1))
    return 'common'


def detect_file_kind(file_path: str) -> str:
    path = _posix(file_path)
    is_data = '/data.tsx' in path or '/data.ts' in path
    if path.endswith('.tsx') and not is_data:
        return 'component'
    if is_data:
        return 'data'
    if '/router/config' in path:
        return 'router'
    if '/constants/' in path:
        return 'constants'
    return 'utils'


def is_data_config_file(file_path: str) -> bool:
    path = _posix(file_path)
    return bool(_DATA_CONFIG_RE.search(path)) or '/router/config' in path


def extract_context_info(file_path: str) -> Dict[str, str]:
    """Area (page) and component hints that help name keys of ``file_path``."""
    path = _posix(file_path)
    context: Dict[str, str] = {}
    match = re.search(r'pages/([^/]+)', path)
    if match:
        context['area'] = match.group(1)
    match = re.search(r'components/([^/]+)', path)
    if match:
        context['component_name'] = match.group(1)
    file_name = _SOURCE_SUFFIX_RE.sub('', path.rsplit('/', 1)[-1])
    if file_name and file_name[0].isupper():
        context['component_name'] = file_name
    return context
