from __future__ import annotations

import logging
from typing import Iterable, NamedTuple

from cardsync.core.config import TranscodeConfig
from cardsync.transcode.base import ConversionContext, ConversionLayer
from cardsync.transcode.layers import CalloutLayer, HighlightLayer, MathLayer, WikiLinkLayer

logger = logging.getLogger("transcode")


class PipelineResult(NamedTuple):
    content: str
    warnings: list[str]
    change_count: int
    applied_layers: list[str]


class ContentPipeline:
    def __init__(self, layers: Iterable[ConversionLayer]):
        # sorted() is stable, so equal priorities keep registration order.
        self.layers = sorted(layers, key=lambda layer: -layer.priority)

    @classmethod
    def from_config(cls, cfg: TranscodeConfig) -> "ContentPipeline":
        return cls(
            [
                MathLayer(enabled=cfg.math_enabled, detect_currency=cfg.detect_currency),
                WikiLinkLayer(enabled=cfg.wikilink_enabled, mode=cfg.wikilink_mode),
                CalloutLayer(enabled=cfg.callout_enabled),
                HighlightLayer(enabled=cfg.highlight_enabled, style=cfg.highlight_style),
            ]
        )

    def convert(self, content: str, context: ConversionContext | None = None) -> PipelineResult:
        context = context or ConversionContext()
        warnings: list[str] = []
        applied: list[str] = []
        total = 0
        for layer in self.layers:
            if not layer.enabled:
                continue
            try:
                result = layer.convert(content, context)
            except Exception as e:
                logger.warning("layer_failed layer=%s source=%s error=%s", layer.name, context.source_file or "-", e)
                warnings.append(f"{layer.name}_failed: {e}")
                continue
            content = result.content
            warnings.extend(result.warnings)
            if result.change_count:
                total += result.change_count
                applied.append(layer.name)
        return PipelineResult(content, warnings, total, applied)
