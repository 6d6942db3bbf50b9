"""
Deps layer: 의존성 버전 산술, 병합, peer dependency 분석.

역할:
- npm range 해석 및 전략별 해결 (versions.py)
- 템플릿 간 의존성 병합 (merger.py)
- 레지스트리/캐시 기반 peer 검사 (registry.py, cache.py, peers.py)
"""

from .merger import DependencyMerger
from .peers import PeerDependencyAnalyzer
from .versions import is_satisfiable_together, resolve

__all__ = [
    "DependencyMerger",
    "PeerDependencyAnalyzer",
    "resolve",
    "is_satisfiable_together",
]
