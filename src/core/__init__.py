"""
Core layer: 파일 시스템 안전 + 실행 리포트.

역할:
- 원자적 쓰기 (temp + fsync + rename)
- run_id 발급
- CompositionReport 생성/경고/저장
"""

from .ids import generate_run_id
from .logging import complete_report, create_report, emit_warning, save_report
from .storage import atomic_write_bytes, atomic_write_json, atomic_write_text, load_json

__all__ = [
    # storage
    "atomic_write_bytes",
    "atomic_write_text",
    "atomic_write_json",
    "load_json",
    # ids
    "generate_run_id",
    # logging
    "create_report",
    "emit_warning",
    "complete_report",
    "save_report",
]
