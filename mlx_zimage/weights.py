# Copyright © 2025 Apple Inc.

import logging
from dataclasses import dataclass, field
from typing import Dict, List

import mlx.core as mx
import mlx.nn as nn
from mlx.utils import tree_flatten

logger = logging.getLogger(__name__)


@dataclass
class WeightsAuditSummary:
    matched: int = 0
    missing: List[str] = field(default_factory=list)
    extra: List[str] = field(default_factory=list)

    @property
    def coverage(self) -> float:
        total = self.matched + len(self.missing)
        return self.matched / total if total else 1.0


def _sample_text(keys: List[str], sample: int) -> str:
    shown = keys[: max(0, sample)]
    if not shown:
        return ""
    suffix = ", ..." if len(keys) > len(shown) else ""
    return f" (sample: {', '.join(shown)}{suffix})"


def audit_weights(
    module: nn.Module,
    weights: Dict[str, mx.array],
    prefix: str = "",
    sample: int = 5,
) -> WeightsAuditSummary:
    """
    Compare the parameters of ``module`` with a loaded weight dictionary.

    A parameter ``name`` is matched by ``f"{prefix}.{name}"`` or, failing
    that, by ``name`` itself.
    """
    summary = WeightsAuditSummary()
    remaining = set(weights.keys())

    for key, _ in tree_flatten(module.parameters()):
        prefixed = f"{prefix}.{key}" if prefix else key
        if prefixed in weights:
            summary.matched += 1
            remaining.discard(prefixed)
        elif key in weights:
            summary.matched += 1
            remaining.discard(key)
        else:
            summary.missing.append(prefixed)
    summary.extra = sorted(remaining)

    logger.info(
        "%s weights audit -> matched: %d, missing: %d, extra: %d",
        prefix or "module",
        summary.matched,
        len(summary.missing),
        len(summary.extra),
    )
    if summary.missing:
        logger.warning(
            "Missing weights: %d%s",
            len(summary.missing),
            _sample_text(summary.missing, sample),
        )
    if summary.extra:
        logger.info(
            "Extra weights: %d%s", len(summary.extra), _sample_text(summary.extra, sample)
        )
    return summary


def load_module_weights(
    module: nn.Module, weights: Dict[str, mx.array], prefix: str = ""
) -> WeightsAuditSummary:
    """Audit ``weights`` against ``module`` then load the matching ones."""
    summary = audit_weights(module, weights, prefix=prefix)

    loaded = []
    for key, _ in tree_flatten(module.parameters()):
        # Same precedence as the audit: prefixed name first
        prefixed = f"{prefix}.{key}" if prefix else key
        if prefixed in weights:
            loaded.append((key, weights[prefixed]))
        elif key in weights:
            loaded.append((key, weights[key]))
    module.load_weights(loaded, strict=False)
    return summary
