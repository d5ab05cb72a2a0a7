"""
Header resolver: maps a sheet's header row to semantic fields.

Pure functions over the header list. Matching is insensitive to case,
whitespace and full-width/half-width forms (NFKC). Callers cache results
under cache.headers_key(spreadsheet_id, sheet_name).
"""
import re
import unicodedata
from dataclasses import dataclass, field

from errors import ValidationError

FIELDS = ("answer", "reason", "class", "name", "email", "timestamp")

DEFAULT_SYNONYMS: dict[str, tuple[str, ...]] = {
    "answer": ("回答", "answer", "答え", "意見", "考え", "感想", "コメント"),
    "reason": ("理由", "reason", "なぜ", "どうして", "根拠"),
    "class": ("クラス", "class", "組", "学年"),
    "name": ("名前", "name", "氏名", "お名前"),
    "email": ("メールアドレス", "email", "メール", "mail", "アドレス"),
    "timestamp": ("タイムスタンプ", "timestamp", "日時", "日付"),
}

REACTION_COLUMNS = ("UNDERSTAND", "LIKE", "CURIOUS")
HIGHLIGHT_COLUMN = "HIGHLIGHT"
SYSTEM_COLUMNS = REACTION_COLUMNS + (HIGHLIGHT_COLUMN,)

_SYSTEM_NORMALIZED = {"understand", "like", "curious", "highlight", "理解", "いいね", "気になる", "ハイライト"}
_TIMESTAMP_NORMALIZED = {"タイムスタンプ", "timestamp", "日時", "日付"}

_WHITESPACE = re.compile(r"\s+")


def normalize_header(text) -> str:
    if text is None:
        return ""
    return _WHITESPACE.sub("", unicodedata.normalize("NFKC", str(text)).casefold())


def is_system_column(header) -> bool:
    norm = normalize_header(header)
    return norm in _SYSTEM_NORMALIZED or norm.startswith("_")


def is_timestamp_column(header) -> bool:
    return normalize_header(header) in _TIMESTAMP_NORMALIZED


@dataclass
class HeaderResolution:
    indices: dict[str, int | None] = field(default_factory=dict)
    missing: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.missing


def _eligible(header, field_name: str) -> bool:
    if not normalize_header(header):
        return False
    if is_system_column(header):
        return False
    if field_name != "timestamp" and is_timestamp_column(header):
        return False
    return True


def resolve_header_indices(
    headers: list,
    required: tuple[str, ...] = ("answer",),
    synonyms: dict[str, tuple[str, ...]] | None = None,
) -> HeaderResolution:
    """
    Resolve each semantic field to a column index.

    Exact (normalized) synonym matches are tried for every field before any
    substring match, both scanning left to right. A column is assigned to at
    most one field. Required fields left unmatched are listed in `missing`;
    optional ones resolve to None.
    """
    synonyms = synonyms or DEFAULT_SYNONYMS
    normalized = [normalize_header(h) for h in headers]
    wanted = {f: [normalize_header(s) for s in synonyms.get(f, ())] for f in FIELDS}
    indices: dict[str, int | None] = {f: None for f in FIELDS}
    used: set[int] = set()

    for matcher in (
        lambda norm, syns: norm in syns,
        lambda norm, syns: any(s and s in norm for s in syns),
    ):
        for field_name in FIELDS:
            if indices[field_name] is not None:
                continue
            for i, norm in enumerate(normalized):
                if i in used or not _eligible(headers[i], field_name):
                    continue
                if matcher(norm, wanted[field_name]):
                    indices[field_name] = i
                    used.add(i)
                    break

    missing = [f for f in required if indices.get(f) is None]
    return HeaderResolution(indices=indices, missing=missing)


def find_header_indices(headers: list, required_names: list[str]) -> dict[str, int]:
    """Exact lookup of literal header names, ignoring whitespace. Raises ValidationError on any miss."""
    positions = {}
    for i, h in enumerate(headers):
        key = _WHITESPACE.sub("", str(h or ""))
        positions.setdefault(key, i)
    result = {}
    missing = []
    for name in required_names:
        idx = positions.get(_WHITESPACE.sub("", name))
        if idx is None:
            missing.append(name)
        else:
            result[name] = idx
    if missing:
        raise ValidationError(f"Missing headers: {', '.join(missing)}")
    return result


# --- Confidence-scored detection ---

_PATTERNS = {
    "answer": {
        "exact": ("回答", "answer"),
        "keywords": ("回答", "答え", "answer", "意見", "考え", "感想", "コメント"),
        "questions": (
            re.compile(r"どう.*思い?.*ますか", re.I),
            re.compile(r".*と思い?.*ますか", re.I),
            re.compile(r".*書きましょう", re.I),
            re.compile(r".*述べ", re.I),
            re.compile(r".*説明して", re.I),
            re.compile(r".*気づいたこと", re.I),
            re.compile(r".*観察して", re.I),
            re.compile(r"what.*do you think", re.I),
            re.compile(r"how.*do you feel", re.I),
            re.compile(r"explain.*your", re.I),
        ),
        "regex": re.compile(r"(回答|答え|answer|意見|考え)", re.I),
    },
    "reason": {
        "exact": ("理由", "reason"),
        "keywords": ("理由", "reason", "なぜ", "どうして", "根拠", "原因"),
        "regex": re.compile(r"(理由|根拠|reason|なぜ|どうして)", re.I),
    },
    "name": {
        "exact": ("名前", "name"),
        "keywords": ("名前", "name", "氏名", "お名前"),
        "regex": re.compile(r"(名前|氏名|name)", re.I),
    },
    "class": {
        "exact": ("クラス", "class"),
        "keywords": ("クラス", "class", "組", "学年"),
        "regex": re.compile(r"(クラス|class|組)", re.I),
    },
    "email": {
        "exact": ("メール", "email"),
        "keywords": ("メール", "email", "mail", "アドレス"),
        "regex": re.compile(r"(メール|email|mail|アドレス)", re.I),
    },
}

# Assignment order; a column taken by an earlier field is not reused
DETECTION_PRIORITY = ("answer", "reason", "email", "name", "class")

MAX_CONFIDENCE = 95

_SAMPLE_VALIDATORS = {
    "email": lambda v: re.fullmatch(r"[^\s@]+@[^\s@]+\.[^\s@]+", v) is not None,
    "answer": lambda v: 5 < len(v) < 1000,
    "reason": lambda v: 3 < len(v) < 500,
    "name": lambda v: 0 < len(v) < 100 and not re.search(r"[@.]", v),
    "class": lambda v: re.fullmatch(r"[0-9一-九\w-]+", v) is not None and len(v) < 20,
}


def base_score(header: str, field_name: str) -> int:
    patterns = _PATTERNS[field_name]
    norm = normalize_header(header)
    score = 0
    if norm in {normalize_header(k) for k in patterns["exact"]}:
        score = 95
    if any(normalize_header(k) in norm for k in patterns["keywords"]):
        score = max(score, 90)
    if field_name == "answer" and any(p.search(header) for p in patterns["questions"]):
        score = max(score, 87)
    if patterns["regex"].search(header):
        score = max(score, 85)
    return score


def _sample_bonus(sample_rows: list[list], index: int, field_name: str) -> int:
    values = [
        str(row[index]).strip()
        for row in sample_rows[:5]
        if index < len(row) and str(row[index] or "").strip()
    ]
    if not values:
        return 0
    valid = sum(1 for v in values if _SAMPLE_VALIDATORS[field_name](v))
    return 5 if valid / len(values) > 0.7 else 0


def recommend_column_mapping(headers: list, sample_rows: list[list] | None = None) -> dict:
    """
    Suggest a column mapping with confidence scores (0-95).

    Scores: exact synonym 95, keyword 90, question phrasing (answer) 87,
    regex 85. An answer followed by a reason candidate gets +8 (+5 more for a
    confirmed pair); a reason with no answer before it gets -15, otherwise +5
    (+3 for a confirmed pair). Agreeing sample data adds +5.
    """
    candidates = [
        (i, str(h)) for i, h in enumerate(headers)
        if normalize_header(h) and not is_system_column(h) and not is_timestamp_column(h)
    ]
    answer_idx = [i for i, h in candidates if base_score(h, "answer") > 60]
    reason_idx = [i for i, h in candidates if base_score(h, "reason") > 60]

    def score(i: int, header: str, field_name: str) -> int:
        base = base_score(header, field_name)
        if base == 0:
            return 0
        bonus = penalty = 0
        if field_name == "answer":
            if any(r > i for r in reason_idx) and base > 70:
                bonus = 8
            if i in answer_idx and any(r > i for r in reason_idx):
                bonus += 5
        elif field_name == "reason":
            answer_before = any(a < i for a in answer_idx)
            if not answer_before and base > 70:
                penalty = 15
            if answer_before:
                bonus = 5 + (3 if i in reason_idx else 0)
        if sample_rows:
            bonus += _sample_bonus(sample_rows, i, field_name)
        return max(0, min(base + bonus - penalty, MAX_CONFIDENCE))

    mapping: dict[str, int] = {}
    confidence: dict[str, int] = {}
    used: set[int] = set()
    for field_name in DETECTION_PRIORITY:
        best_i, best = -1, 0
        for i, header in candidates:
            s = score(i, header, field_name)
            if s > best:
                best_i, best = i, s
        if best_i != -1 and best_i not in used:
            mapping[field_name] = best_i
            confidence[field_name] = best
            used.add(best_i)

    # A weak reason placed before the answer is most likely a mismatch
    if "answer" in mapping and "reason" in mapping and mapping["reason"] < mapping["answer"]:
        if confidence["reason"] < confidence["answer"] - 10:
            del mapping["reason"]
            del confidence["reason"]

    overall = round(sum(confidence.values()) / len(confidence)) if confidence else 0
    return {"mapping": mapping, "confidence": confidence, "overallScore": overall}


def merge_column_confidence(base_mapping: dict | None, detected: dict | None) -> dict:
    """
    Fold a detection result into an existing columnMapping.

    A detected index replaces the existing one only when its confidence is
    strictly higher. A manually set index without a score counts as 100.
    Existing confidence values survive when the detection has none.
    """
    merged = dict(base_mapping or {})
    confidence = dict(merged.get("confidence") or {})
    detected = detected or {}
    detected_conf = detected.get("confidence") or {}
    for field_name, index in (detected.get("mapping") or {}).items():
        new_score = detected_conf.get(field_name, 0)
        current = confidence.get(field_name, -1 if merged.get(field_name) is None else 100)
        if new_score > current:
            merged[field_name] = index
            confidence[field_name] = new_score
    merged["confidence"] = confidence
    return merged
