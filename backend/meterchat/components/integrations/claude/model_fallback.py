from __future__ import annotations


PRIMARY_HAIKU_MODEL = "claude-3-5-haiku-latest"
SNAPSHOT_HAIKU_MODEL = "claude-3-5-haiku-20241022"
LEGACY_HAIKU_MODEL = "claude-3-haiku-20240307"

_HAIKU_CHAIN = (PRIMARY_HAIKU_MODEL, SNAPSHOT_HAIKU_MODEL, LEGACY_HAIKU_MODEL)


def candidate_models_for(model: str | None) -> list[str]:
    """Models to try in order: the configured one, then its known Haiku aliases."""
    resolved = (model or "").strip() or PRIMARY_HAIKU_MODEL
    candidates = [resolved]
    if resolved.lower() in _HAIKU_CHAIN:
        candidates.extend(alias for alias in _HAIKU_CHAIN if alias != resolved.lower())
    return candidates


def is_model_not_found_error(exc: Exception) -> bool:
    # anthropic.NotFoundError carries status_code=404; fall back to the message text
    if getattr(exc, "status_code", None) == 404:
        return True
    text = str(exc or "").lower()
    if not text:
        return False
    return (
        "not_found_error" in text
        or ("model" in text and "not found" in text)
    )
