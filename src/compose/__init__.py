"""
Compose layer: 합성 파이프라인 + 설치 경계.

역할:
- 전체 단계 조율, CompositionReport 작성 (pipeline.py)
- 패키지 매니저 설치 재시도/분류 (install.py)
"""

from .install import InstallationOrchestrator, PackageInstaller, classify_install_failure
from .pipeline import Composer, compose

__all__ = [
    "Composer",
    "compose",
    "InstallationOrchestrator",
    "PackageInstaller",
    "classify_install_failure",
]
