"""
VersionArbiter: npm 스타일 semver range 산술 (순수 함수, 상태 없음).

규칙:
- range 문법: ^ ~ >= <= > < =, exact, x-range(x X * 부분 버전),
  hyphen range(a - b), || 합집합, 공백 결합 comparator, 선행 v 허용
- 빈 문자열 = "*"
- latest, file:, git URL 등 semver 아닌 값 → InvalidSemver
- range는 정규화된 구간(Interval) 합집합으로 표현
- resolve()는 절대 예외를 던지지 않음 (malformed → error 결과)
"""

import re
from dataclasses import dataclass, field
from functools import total_ordering
from typing import Any

from src.domain.constants import MERGE_STRATEGIES
from src.domain.errors import ErrorCodes, InvalidSemver, InvalidStrategy
from src.domain.schemas import Severity

# =============================================================================
# Error Strings (Conflict.error 값)
# =============================================================================

ERROR_INCOMPATIBLE = "Incompatible versions"
ERROR_MANUAL = "Manual resolution required"
ERROR_INVALID_SEMVER = "Invalid semver versions"

KIND_INCOMPATIBLE = "incompatible"
KIND_MANUAL = "manual"
KIND_INVALID_SEMVER = "invalid_semver"


# =============================================================================
# Version
# =============================================================================

VERSION_PATTERN = re.compile(
    r"^v?(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?$"
)

_PARTIAL = (
    r"v?(\d+|[xX*])(?:\.(\d+|[xX*]))?(?:\.(\d+|[xX*]))?"
    r"(?:-([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?"
)
COMPARATOR_PATTERN = re.compile(r"^(\^|~>?|>=|<=|>|<|=)?" + _PARTIAL + "$")
HYPHEN_PATTERN = re.compile(r"^\s*(\S+)\s+-\s+(\S+)\s*$")
_OPERATOR_SPACE = re.compile(r"(<=|>=|<|>|=|\^|~>?)\s+")
# comparator 안의 prerelease 버전 (major.minor.patch-tag)
_PRERELEASE_BASE = re.compile(r"(?<![\w.])v?(\d+)\.(\d+)\.(\d+)-[0-9A-Za-z]")


def _prerelease_key(parts: tuple[int | str, ...]) -> tuple[Any, ...]:
    # 릴리스 > 모든 prerelease, 숫자 식별자 < 문자 식별자
    if not parts:
        return (1,)
    return (0, tuple((0, p, "") if isinstance(p, int) else (1, 0, p) for p in parts))


@total_ordering
@dataclass(frozen=True)
class Version:
    """semver 2.0 버전 (build 메타데이터는 무시)."""
    major: int
    minor: int
    patch: int
    prerelease: tuple[int | str, ...] = ()

    @property
    def _key(self) -> tuple[Any, ...]:
        return (self.major, self.minor, self.patch, _prerelease_key(self.prerelease))

    def __lt__(self, other: "Version") -> bool:
        return self._key < other._key

    def __str__(self) -> str:
        base = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            return base + "-" + ".".join(str(p) for p in self.prerelease)
        return base

    @property
    def is_prerelease(self) -> bool:
        return bool(self.prerelease)


def _parse_prerelease(text: str | None) -> tuple[int | str, ...]:
    if not text:
        return ()
    return tuple(int(p) if p.isdigit() else p for p in text.split("."))


def parse_version(text: str) -> Version:
    """
    정확한 버전 문자열 파싱.

    Raises:
        InvalidSemver: semver 형식이 아닌 경우
    """
    match = VERSION_PATTERN.match(text.strip()) if isinstance(text, str) else None
    if not match:
        raise InvalidSemver(
            ErrorCodes.INVALID_SEMVER, f"not a semver version: {text!r}", value=text
        )
    major, minor, patch, pre = match.groups()
    return Version(int(major), int(minor), int(patch), _parse_prerelease(pre))


def try_parse_version(text: str) -> Version | None:
    try:
        return parse_version(text)
    except InvalidSemver:
        return None


# =============================================================================
# Interval / Range
# =============================================================================

@dataclass(frozen=True)
class Interval:
    """연속 버전 구간. low/high None = 무한."""
    low: Version | None = None
    low_inclusive: bool = True
    high: Version | None = None
    high_inclusive: bool = False

    @property
    def is_empty(self) -> bool:
        if self.low is None or self.high is None:
            return False
        if self.low > self.high:
            return True
        if self.low == self.high:
            return not (self.low_inclusive and self.high_inclusive)
        return False

    def contains(self, version: Version) -> bool:
        if self.low is not None:
            if version < self.low or (version == self.low and not self.low_inclusive):
                return False
        if self.high is not None:
            if version > self.high or (version == self.high and not self.high_inclusive):
                return False
        return True

    def intersect(self, other: "Interval") -> "Interval":
        low, low_inc = _max_low(
            (self.low, self.low_inclusive), (other.low, other.low_inclusive)
        )
        high, high_inc = _min_high(
            (self.high, self.high_inclusive), (other.high, other.high_inclusive)
        )
        return Interval(low, low_inc, high, high_inc)

    def within(self, other: "Interval") -> bool:
        """self ⊆ other."""
        if other.low is not None:
            if self.low is None or self.low < other.low:
                return False
            if self.low == other.low and self.low_inclusive and not other.low_inclusive:
                return False
        if other.high is not None:
            if self.high is None or self.high > other.high:
                return False
            if (
                self.high == other.high
                and self.high_inclusive
                and not other.high_inclusive
            ):
                return False
        return True

    @property
    def is_exact(self) -> bool:
        return (
            self.low is not None
            and self.low == self.high
            and self.low_inclusive
            and self.high_inclusive
        )


def _max_low(
    a: tuple[Version | None, bool], b: tuple[Version | None, bool]
) -> tuple[Version | None, bool]:
    if a[0] is None:
        return b
    if b[0] is None:
        return a
    if a[0] == b[0]:
        return a[0], a[1] and b[1]
    return a if a[0] > b[0] else b


def _min_high(
    a: tuple[Version | None, bool], b: tuple[Version | None, bool]
) -> tuple[Version | None, bool]:
    if a[0] is None:
        return b
    if b[0] is None:
        return a
    if a[0] == b[0]:
        return a[0], a[1] and b[1]
    return a if a[0] < b[0] else b


ANY = Interval()


@dataclass(frozen=True)
class VersionRange:
    """
    파싱된 range: 원문 + 정규화된 구간 합집합.

    prerelease_bases: comparator가 prerelease로 명시한 (major, minor, patch).
    prerelease 버전은 같은 major.minor.patch가 여기 있을 때만 매칭.
    """
    raw: str
    intervals: tuple[Interval, ...] = field(default_factory=tuple)
    prerelease_bases: frozenset[tuple[int, int, int]] = frozenset()

    @property
    def has_prerelease(self) -> bool:
        return bool(self.prerelease_bases)

    @property
    def is_empty(self) -> bool:
        return not self.intervals

    @property
    def is_exact(self) -> bool:
        return len(self.intervals) == 1 and self.intervals[0].is_exact


def _ceiling(major: int, minor: int = 0, patch: int = 0) -> Version:
    # 다음 릴리스의 prerelease까지 제외 (<X.Y.Z-0)
    return Version(major, minor, patch, (0,))


def _component(value: str | None) -> int | None:
    if value is None or value in ("x", "X", "*"):
        return None
    return int(value)


def _comparator_interval(token: str) -> Interval:
    match = COMPARATOR_PATTERN.match(token)
    if not match:
        raise InvalidSemver(
            ErrorCodes.INVALID_SEMVER, f"invalid comparator: {token!r}", value=token
        )
    op, major_s, minor_s, patch_s, pre_s = match.groups()
    op = op or ""
    major = _component(major_s)
    minor = _component(minor_s) if major is not None else None
    patch = _component(patch_s) if minor is not None else None
    pre = _parse_prerelease(pre_s)
    if pre and patch is None:
        raise InvalidSemver(
            ErrorCodes.INVALID_SEMVER,
            f"prerelease requires a full version: {token!r}",
            value=token,
        )

    if major is None:
        # *, x, >=*, <=* → 전체 / >*, <* → 공집합
        if op in (">", "<"):
            return Interval(Version(0, 0, 0), True, Version(0, 0, 0), False)
        return ANY

    full = Version(major, minor or 0, patch or 0, pre)

    if op in ("", "="):
        if minor is None:
            return Interval(Version(major, 0, 0), True, _ceiling(major + 1), False)
        if patch is None:
            return Interval(
                Version(major, minor, 0), True, _ceiling(major, minor + 1), False
            )
        return Interval(full, True, full, True)

    if op.startswith("~"):
        if minor is None:
            return Interval(full, True, _ceiling(major + 1), False)
        return Interval(full, True, _ceiling(major, minor + 1), False)

    if op == "^":
        if major > 0 or minor is None:
            return Interval(full, True, _ceiling(major + 1), False)
        if minor > 0 or patch is None:
            return Interval(full, True, _ceiling(0, minor + 1), False)
        return Interval(full, True, _ceiling(0, 0, patch + 1), False)

    if op == ">":
        if minor is None:
            return Interval(Version(major + 1, 0, 0), True, None, False)
        if patch is None:
            return Interval(Version(major, minor + 1, 0), True, None, False)
        return Interval(full, False, None, False)

    if op == ">=":
        return Interval(full, True, None, False)

    if op == "<":
        if patch is None:
            return Interval(None, True, _ceiling(major, minor or 0), False)
        return Interval(None, True, full, False)

    # "<="
    if minor is None:
        return Interval(None, True, _ceiling(major + 1), False)
    if patch is None:
        return Interval(None, True, _ceiling(major, minor + 1), False)
    return Interval(None, True, full, True)


def _hyphen_interval(low_text: str, high_text: str) -> Interval:
    low = _comparator_interval(">=" + low_text)
    high_match = COMPARATOR_PATTERN.match(high_text)
    if not high_match or high_match.group(1):
        raise InvalidSemver(
            ErrorCodes.INVALID_SEMVER,
            f"invalid hyphen range bound: {high_text!r}",
            value=high_text,
        )
    high = _comparator_interval("<=" + high_text)
    return low.intersect(high)


def _comparator_set(text: str) -> Interval:
    text = text.strip()
    if not text:
        return ANY
    hyphen = HYPHEN_PATTERN.match(text)
    if hyphen:
        return _hyphen_interval(hyphen.group(1), hyphen.group(2))
    interval = ANY
    for token in _OPERATOR_SPACE.sub(r"\1", text).split():
        interval = interval.intersect(_comparator_interval(token))
    return interval


def _normalize(intervals: list[Interval]) -> tuple[Interval, ...]:
    """공집합 제거 + low 기준 정렬 + 겹치는 구간 병합."""
    live = [i for i in intervals if not i.is_empty]
    if not live:
        return ()
    live.sort(key=lambda i: (i.low is not None, i.low._key if i.low else (), not i.low_inclusive))
    merged = [live[0]]
    for current in live[1:]:
        last = merged[-1]
        if last.high is None:
            break
        touches = current.low is None or current.low < last.high or (
            current.low == last.high and (current.low_inclusive or last.high_inclusive)
        )
        if touches:
            high, high_inc = _max_high(
                (last.high, last.high_inclusive),
                (current.high, current.high_inclusive),
            )
            merged[-1] = Interval(last.low, last.low_inclusive, high, high_inc)
        else:
            merged.append(current)
    return tuple(merged)


def _max_high(
    a: tuple[Version | None, bool], b: tuple[Version | None, bool]
) -> tuple[Version | None, bool]:
    if a[0] is None or b[0] is None:
        return None, False
    if a[0] == b[0]:
        return a[0], a[1] or b[1]
    return a if a[0] > b[0] else b


def parse_range(text: str) -> VersionRange:
    """
    npm range 파싱.

    Args:
        text: range 문자열 (예: "^18.2.0", ">=1.0.0 <2.0.0 || 3.x")

    Returns:
        VersionRange (공집합일 수 있음)

    Raises:
        InvalidSemver: 문법 오류
    """
    if not isinstance(text, str):
        raise InvalidSemver(
            ErrorCodes.INVALID_SEMVER, "range must be a string", value=repr(text)
        )
    sets = [_comparator_set(part) for part in text.split("||")]
    return VersionRange(
        raw=text,
        intervals=_normalize(sets),
        prerelease_bases=frozenset(
            (int(a), int(b), int(c)) for a, b, c in _PRERELEASE_BASE.findall(text)
        ),
    )


def try_parse_range(text: str) -> VersionRange | None:
    try:
        return parse_range(text)
    except InvalidSemver:
        return None


def is_valid_range(text: str) -> bool:
    return try_parse_range(text) is not None


def range_signature(text: str) -> str:
    """캐시 키용 정규화 문자열 (공백 정리)."""
    return " ".join(_OPERATOR_SPACE.sub(r"\1", text.strip()).split()) or "*"


# =============================================================================
# Queries
# =============================================================================

def _as_range(value: str | VersionRange) -> VersionRange:
    return value if isinstance(value, VersionRange) else parse_range(value)


def satisfies(version: str | Version, version_range: str | VersionRange) -> bool:
    """
    version이 range를 만족하는지.

    prerelease 버전은 range의 comparator가 같은 major.minor.patch의
    prerelease를 명시할 때만 후보가 된다 (>=1.0.0-beta는 2.0.0-alpha 불만족).
    """
    v = version if isinstance(version, Version) else parse_version(version)
    r = _as_range(version_range)
    if v.is_prerelease and (v.major, v.minor, v.patch) not in r.prerelease_bases:
        return False
    return any(i.contains(v) for i in r.intervals)


def max_satisfying(
    versions: list[str], version_range: str | VersionRange
) -> str | None:
    """versions 중 range를 만족하는 최고 버전 (파싱 불가 항목은 건너뜀)."""
    r = _as_range(version_range)
    best: tuple[Version, str] | None = None
    for text in versions:
        v = try_parse_version(text)
        if v is None or not satisfies(v, r):
            continue
        if best is None or v > best[0]:
            best = (v, text)
    return best[1] if best else None


def min_version(version_range: str | VersionRange) -> Version | None:
    """range를 만족하는 최소 버전. 공집합이면 None."""
    r = _as_range(version_range)
    for interval in r.intervals:
        low = interval.low
        if low is None:
            candidate = Version(0, 0, 0)
        elif interval.low_inclusive:
            candidate = low
        elif low.is_prerelease:
            candidate = Version(low.major, low.minor, low.patch, low.prerelease + (0,))
        else:
            candidate = Version(low.major, low.minor, low.patch + 1)
        if interval.contains(candidate):
            return candidate
    return None


def intersect(a: str | VersionRange, b: str | VersionRange) -> tuple[Interval, ...]:
    ra, rb = _as_range(a), _as_range(b)
    return _normalize([x.intersect(y) for x in ra.intervals for y in rb.intervals])


def is_satisfiable_together(a: str, b: str) -> bool:
    """
    두 range의 교집합이 비어있지 않은지.

    Raises:
        InvalidSemver: 한쪽이라도 파싱 불가
    """
    return bool(intersect(a, b))


def is_subset(a: str | VersionRange, b: str | VersionRange) -> bool:
    """a ⊆ b (b는 정규화되어 있으므로 구간 단위 포함 검사)."""
    ra, rb = _as_range(a), _as_range(b)
    if ra.is_empty:
        return True
    return all(any(x.within(y) for y in rb.intervals) for x in ra.intervals)


def specificity(version_range: str | VersionRange) -> int:
    """exact(3) > tilde(2) > caret(1) > 기타(0)."""
    r = _as_range(version_range)
    if r.is_exact:
        return 3
    stripped = r.raw.strip()
    if stripped.startswith("~"):
        return 2
    if stripped.startswith("^"):
        return 1
    return 0


def severity_between(a: str | VersionRange, b: str | VersionRange) -> Severity:
    """
    최소 버전 차이 기반 심각도.

    - major 차이 > 1 → high
    - major 차이 == 1 → medium
    - minor 차이 > 5 → medium
    - 그 외 → low
    """
    va, vb = min_version(a), min_version(b)
    if va is None or vb is None:
        return Severity.HIGH
    major_diff = abs(va.major - vb.major)
    if major_diff > 1:
        return Severity.HIGH
    if major_diff == 1:
        return Severity.MEDIUM
    if abs(va.minor - vb.minor) > 5:
        return Severity.MEDIUM
    return Severity.LOW


# =============================================================================
# Resolution
# =============================================================================

@dataclass(frozen=True)
class ResolveResult:
    """resolve() 결과. version/error 중 하나만 non-null."""
    version: str | None
    error: str | None = None
    error_kind: str | None = None
    severity: Severity = Severity.LOW

    @property
    def ok(self) -> bool:
        return self.error is None


def validate_strategy(strategy: str) -> None:
    if strategy not in MERGE_STRATEGIES:
        raise InvalidStrategy(
            ErrorCodes.INVALID_STRATEGY,
            f"Invalid strategy: {strategy}. Valid strategies: {', '.join(MERGE_STRATEGIES)}",
            strategy=strategy,
        )


def _pick_by_min(ra: VersionRange, rb: VersionRange, highest: bool) -> str:
    va, vb = min_version(ra), min_version(rb)
    if va is None:
        return rb.raw if highest and vb is not None else ra.raw
    if vb is None:
        return ra.raw
    if va == vb:
        return ra.raw
    if highest:
        return ra.raw if va > vb else rb.raw
    return ra.raw if va < vb else rb.raw


def _compatible(ra: VersionRange, rb: VersionRange) -> ResolveResult:
    severity = severity_between(ra, rb)
    if not intersect(ra, rb):
        return ResolveResult(None, ERROR_INCOMPATIBLE, KIND_INCOMPATIBLE, severity)
    if is_subset(ra, rb):
        return ResolveResult(ra.raw, severity=severity)
    if is_subset(rb, ra):
        return ResolveResult(rb.raw, severity=severity)
    sa, sb = specificity(ra), specificity(rb)
    if sa != sb:
        return ResolveResult(ra.raw if sa > sb else rb.raw, severity=severity)
    return ResolveResult(_pick_by_min(ra, rb, highest=True), severity=severity)


def _smart(ra: VersionRange, rb: VersionRange) -> ResolveResult:
    a, b = ra.raw.strip(), rb.raw.strip()
    va, vb = min_version(ra), min_version(rb)
    if va is not None and vb is not None:
        same_major_caret = (
            a.startswith("^") and b.startswith("^") and va.major == vb.major >= 1
        )
        same_minor_tilde = (
            a.startswith("~")
            and b.startswith("~")
            and (va.major, va.minor) == (vb.major, vb.minor)
        )
        if same_major_caret or same_minor_tilde:
            return ResolveResult(_pick_by_min(ra, rb, highest=True))
    if ra.is_exact and va is not None and satisfies(va, rb):
        return ResolveResult(ra.raw)
    if rb.is_exact and vb is not None and satisfies(vb, ra):
        return ResolveResult(rb.raw)
    return _compatible(ra, rb)


def resolve(a: str, b: str, strategy: str = "smart") -> ResolveResult:
    """
    같은 패키지의 두 range를 전략에 따라 하나로 해결.

    - highest: 최소 만족 버전이 큰 쪽 (동률이면 a), 항상 성공
    - lowest: 최소 만족 버전이 작은 쪽 (동률이면 a), 항상 성공
    - compatible: 겹치면 더 좁은 쪽, 안 겹치면 "Incompatible versions"
    - manual: 항상 "Manual resolution required"
    - smart: 알려진 호환 패턴 우선, 아니면 compatible

    malformed range는 예외 대신 "Invalid semver versions" 결과.

    Raises:
        InvalidStrategy: 알 수 없는 전략 (호출자 프로그래밍 오류)
    """
    validate_strategy(strategy)
    ra, rb = try_parse_range(a), try_parse_range(b)
    if ra is None or rb is None:
        return ResolveResult(
            None, ERROR_INVALID_SEMVER, KIND_INVALID_SEMVER, Severity.MEDIUM
        )

    if strategy == "manual":
        return ResolveResult(None, ERROR_MANUAL, KIND_MANUAL, severity_between(ra, rb))
    if strategy == "highest":
        return ResolveResult(
            _pick_by_min(ra, rb, highest=True), severity=severity_between(ra, rb)
        )
    if strategy == "lowest":
        return ResolveResult(
            _pick_by_min(ra, rb, highest=False), severity=severity_between(ra, rb)
        )
    if strategy == "compatible":
        return _compatible(ra, rb)
    return _smart(ra, rb)
