"""
App layer: HTTP 서버 (FastAPI).

역할:
- 합성 요청 수신, 리포트 반환/보관
- ⚠️ 합성 로직 없음 (src.compose에 위임)
"""
