"""Authentication context extraction from raw policy documents.

Policy documents arrive in whatever shape the source API produced: Graph
v1.0 and beta differ, ARM nests everything under ``properties``, PIM rules
only expose the class reference as a ``claimValue``, and label settings are
key/value lists. Extraction therefore runs an ordered list of strategies and
stops at the first one that yields something:

  1. structured   known field names at the top level and under ``properties``
  2. serialized   the same field names anywhere in the JSON text, each
                  followed by its full decoded value
  3. bare_token   quoted ``c<digits>`` tokens, only when the text mentions
                  an authentication context or a claim value

A document is reported as carrying no reference only when all three are
empty. Malformed input is reported, never raised.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional

from ..models import CorrelationContext, ErrorKind, MarkerReference, SourceKind

logger = logging.getLogger(__name__)

STRATEGY_STRUCTURED = "structured"
STRATEGY_SERIALIZED = "serialized"
STRATEGY_BARE_TOKEN = "bare_token"

MARKER_FIELDS = (
    "authenticationContextIds",
    "authenticationContextClassReferences",
    "authenticationContextId",
    "authenticationContextClassReference",
    "includeAuthenticationContextIds",
    "includeAuthenticationContextClassReferences",
)
_MARKER_FIELDS_LOWER = tuple(f.lower() for f in MARKER_FIELDS)

ROLE_FIELDS = ("roleDefinitionId", "roleId", "roleTemplateId")

GUID_RE = re.compile(
    r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}"
)
TOKEN_RE = re.compile(r"c\d+")

# "<field>": followed by whatever JSON value the field holds
_SERIALIZED_FIELD_RE = re.compile(
    r'"(?:include)?authenticationContext(?:Ids?|ClassReferences?)"\s*:\s*',
    re.IGNORECASE,
)
_JSON_DECODER = json.JSONDecoder()
_BARE_TOKEN_RE = re.compile(r'"(c\d+)"')
_MARKER_KEYWORD_RE = re.compile(r"authenticationcontext|claimvalue", re.IGNORECASE)


class MalformedDocument(ValueError):
    """The input could not be interpreted as a policy document."""


@dataclass
class ExtractionOutcome:
    marker_ids: set = field(default_factory=set)
    marker_tokens: set = field(default_factory=set)
    role_ref: Optional[str] = None
    strategy: Optional[str] = None
    error: Optional[str] = None

    @property
    def found(self) -> bool:
        return bool(self.marker_ids or self.marker_tokens)


# ── Value classification ──────────────────────────────────────────────────


def classify_value(value: str, ids: set, tokens: set) -> None:
    """Sort one raw value into marker ids (GUIDs) or class reference tokens."""
    value = value.strip()
    if GUID_RE.fullmatch(value):
        ids.add(value.lower())
    elif TOKEN_RE.fullmatch(value):
        tokens.add(value)


def _iter_values(raw: Any) -> Iterable[str]:
    """Flatten a field value: a string, a list of strings, or objects with ``id``."""
    if raw is None:
        return
    if isinstance(raw, str):
        yield raw
    elif isinstance(raw, dict):
        inner = raw.get("id")
        if isinstance(inner, str):
            yield inner
    elif isinstance(raw, (list, tuple)):
        for item in raw:
            yield from _iter_values(item)


# ── Input normalization ────────────────────────────────────────────────────


def parse_document(document: Any) -> Any:
    """Return a generic tree for *document*, parsing JSON text when needed."""
    if isinstance(document, (bytes, bytearray)):
        try:
            document = document.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedDocument(f"undecodable bytes: {e}") from e
    if isinstance(document, str):
        try:
            document = json.loads(document)
        except ValueError as e:
            raise MalformedDocument(f"invalid JSON: {e}") from e
    if not isinstance(document, (dict, list)):
        raise MalformedDocument(f"expected an object or array, got {type(document).__name__}")
    return document


def fold_key_value_settings(node: Any) -> Any:
    """Turn ``[{"Key": k, "Value": v}, ...]`` lists into ``{k: v}`` maps.

    Label actions are sometimes returned as JSON-encoded strings; those are
    decoded on the way through. Anything else is returned unchanged.
    """
    if isinstance(node, str):
        stripped = node.strip()
        if stripped[:1] in ("{", "["):
            try:
                return fold_key_value_settings(json.loads(stripped))
            except ValueError:
                return node
        return node
    if isinstance(node, dict):
        return {k: fold_key_value_settings(v) for k, v in node.items()}
    if isinstance(node, list):
        if node and all(isinstance(i, dict) and _is_key_value(i) for i in node):
            folded = {}
            for item in node:
                key = item.get("Key", item.get("key"))
                if isinstance(key, str):
                    folded[key] = fold_key_value_settings(item.get("Value", item.get("value")))
            return folded
        return [fold_key_value_settings(i) for i in node]
    return node


def _is_key_value(item: dict) -> bool:
    keys = {k.lower() for k in item}
    return "key" in keys and "value" in keys and len(keys) <= 3


# ── Strategies ─────────────────────────────────────────────────────────────


def _structured_pass(tree: Any, ids: set, tokens: set) -> None:
    if not isinstance(tree, dict):
        return
    layers = [tree]
    props = _get_ci(tree, "properties")
    if isinstance(props, dict):
        layers.append(props)
    for layer in layers:
        for key, raw in layer.items():
            if isinstance(key, str) and key.lower() in _MARKER_FIELDS_LOWER:
                for value in _iter_values(raw):
                    classify_value(value, ids, tokens)


def _serialized_pass(text: str, ids: set, tokens: set) -> None:
    for match in _SERIALIZED_FIELD_RE.finditer(text):
        # decode the complete value so nested objects and arrays survive
        try:
            raw, _ = _JSON_DECODER.raw_decode(text, match.end())
        except ValueError:
            continue
        for value in _iter_values(raw):
            classify_value(value, ids, tokens)


def _bare_token_pass(text: str, tokens: set) -> None:
    if not _MARKER_KEYWORD_RE.search(text):
        return
    tokens.update(_BARE_TOKEN_RE.findall(text))


def _get_ci(mapping: dict, name: str) -> Any:
    """Case-insensitive key lookup, exact match preferred."""
    if name in mapping:
        return mapping[name]
    lowered = name.lower()
    for key, value in mapping.items():
        if isinstance(key, str) and key.lower() == lowered:
            return value
    return None


def find_role_reference(tree: Any) -> Optional[str]:
    """Best-effort role reference from a policy or assignment document."""
    if not isinstance(tree, dict):
        return None
    layers = [tree]
    props = _get_ci(tree, "properties")
    if isinstance(props, dict):
        layers.append(props)
    for layer in layers:
        for name in ROLE_FIELDS:
            value = _get_ci(layer, name)
            if isinstance(value, str) and value.strip():
                return value.strip()
        role_def = _get_ci(layer, "roleDefinition")
        if isinstance(role_def, dict):
            value = role_def.get("id")
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None


def scan_document(document: Any) -> ExtractionOutcome:
    """Run the extraction strategies over one document. Never raises."""
    outcome = ExtractionOutcome()
    try:
        tree = parse_document(document)
    except MalformedDocument as e:
        outcome.error = str(e)
        return outcome

    outcome.role_ref = find_role_reference(tree)

    _structured_pass(tree, outcome.marker_ids, outcome.marker_tokens)
    if outcome.found:
        outcome.strategy = STRATEGY_STRUCTURED
        return outcome

    try:
        text = json.dumps(tree, sort_keys=True, default=str)
    except (TypeError, ValueError) as e:
        outcome.error = f"unserializable document: {e}"
        return outcome

    _serialized_pass(text, outcome.marker_ids, outcome.marker_tokens)
    if outcome.found:
        outcome.strategy = STRATEGY_SERIALIZED
        return outcome

    _bare_token_pass(text, outcome.marker_tokens)
    if outcome.found:
        outcome.strategy = STRATEGY_BARE_TOKEN
    return outcome


class RuleExtractor:
    """Turns raw documents into MarkerReferences, counting bad input in the context."""

    def __init__(self, context: CorrelationContext):
        self.context = context

    def extract(
        self,
        document: Any,
        source_kind: SourceKind,
        owner_id: str,
        scope_id: str = "",
        scope_type: str = "",
        role_ref: Optional[str] = None,
    ) -> Optional[MarkerReference]:
        outcome = scan_document(document)
        if outcome.error:
            self.context.diagnostics.record(
                ErrorKind.MALFORMED_DOCUMENT,
                f"{source_kind.value}:{owner_id or '?'}",
                outcome.error,
            )
            return None
        if not outcome.found:
            return None
        if outcome.strategy != STRATEGY_STRUCTURED:
            logger.debug("%s %s matched via %s pass", source_kind.value, owner_id, outcome.strategy)
        return MarkerReference(
            source_kind=source_kind,
            owner_id=owner_id,
            scope_id=scope_id,
            scope_type=scope_type,
            marker_ids=frozenset(outcome.marker_ids),
            marker_tokens=frozenset(outcome.marker_tokens),
            role_ref=outcome.role_ref or role_ref,
        )

    def extract_all(
        self,
        documents: List[Any],
        source_kind: SourceKind,
        owner_id: str,
        scope_id: str = "",
        scope_type: str = "",
        role_ref: Optional[str] = None,
    ) -> Optional[MarkerReference]:
        """Merge the references found across several rule documents of one owner."""
        ids, tokens = set(), set()
        found_role = None
        for doc in documents:
            ref = self.extract(doc, source_kind, owner_id, scope_id, scope_type, role_ref)
            if ref is None:
                continue
            ids.update(ref.marker_ids)
            tokens.update(ref.marker_tokens)
            if found_role is None and ref.role_ref:
                found_role = ref.role_ref
        if not ids and not tokens:
            return None
        return MarkerReference(
            source_kind=source_kind,
            owner_id=owner_id,
            scope_id=scope_id,
            scope_type=scope_type,
            marker_ids=frozenset(ids),
            marker_tokens=frozenset(tokens),
            role_ref=found_role or role_ref,
        )
