"""
Templates layer: 템플릿 매니페스트 + 파일 합성 + 설정 문서.

역할:
- config.json 로드/검증/캐시 (manager.py)
- 파일 복사, 변수 치환, 충돌 해결 (materializer.py)
- .env.example / setup.md 생성 (docs.py)
"""

from .docs import ConfigDocGenerator
from .manager import ManifestStore, summarize_manifests, validate_manifest_data
from .materializer import FileMaterializer, substitute_variables

__all__ = [
    # manager
    "ManifestStore",
    "validate_manifest_data",
    "summarize_manifests",
    # materializer
    "FileMaterializer",
    "substitute_variables",
    # docs
    "ConfigDocGenerator",
]
