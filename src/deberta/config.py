"""
Configuration for the disentangled self-attention layer.

The layer reads nine settings, all fixed at construction time:

    hidden_size                   width of the hidden states
    num_attention_heads           number of heads the width is split into
    hidden_dropout_prob           dropout on the relative embeddings
    attention_probs_dropout_prob  dropout on the attention weights
    relative_attention            turn relative position biases on/off
    max_relative_positions        half-width of the relative embedding table
                                  (< 1 means "use max_position_embeddings")
    max_position_embeddings       fallback for max_relative_positions
    pos_att_type                  which bias terms to compute (c2p, p2c, p2p)
    talking_head                  learned mixing across heads

Position Attention Types
------------------------
DeBERTa splits the attention score between tokens i and j into pieces:

    score(i, j) = content(i)·content(j)      ← content-to-content (always on)
                + content(i)·position(i-j)   ← c2p: content-to-position
                + position(j-i)·content(j)   ← p2c: position-to-content
                + position·position          ← p2p: position-to-position

Published config files store the enabled set as a pipe-separated string,
e.g. "c2p|p2c". We accept that string form as well as lists.

Note on p2p: enabling p2p creates BOTH position projections, but the layer
never adds a p2p term to the scores. This matches the reference architecture
and is deliberate.
"""

import json
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, Optional, Union

from .errors import ConfigurationError, ShapeError


class PositionAttentionType(Enum):
    """The three kinds of disentangled relative position bias."""

    C2P = "c2p"
    P2C = "p2c"
    P2P = "p2p"


# Canonical serialisation order
_TYPE_ORDER = (PositionAttentionType.C2P, PositionAttentionType.P2C, PositionAttentionType.P2P)


def parse_pos_att_type(
    value: Optional[Union[str, Iterable[Union[str, PositionAttentionType]]]]
) -> FrozenSet[PositionAttentionType]:
    """
    Parse a position attention type set.

    Args:
        value: None, a "|"-separated string such as "c2p|p2c", or an
               iterable of strings / PositionAttentionType members

    Returns:
        Frozen set of PositionAttentionType

    Raises:
        ConfigurationError: If a token is not one of c2p, p2c, p2p

    Examples:
        >>> sorted(t.value for t in parse_pos_att_type("C2P | p2c"))
        ['c2p', 'p2c']
        >>> parse_pos_att_type(None)
        frozenset()
    """
    if value is None:
        return frozenset()

    if isinstance(value, str):
        tokens = value.split("|")
    else:
        tokens = list(value)

    parsed = set()
    for token in tokens:
        if isinstance(token, PositionAttentionType):
            parsed.add(token)
            continue
        token = str(token).strip().lower()
        if not token:
            continue
        try:
            parsed.add(PositionAttentionType(token))
        except ValueError:
            raise ConfigurationError(
                f"Unknown position attention type '{token}'. "
                f"Expected a subset of {{c2p, p2c, p2p}}."
            ) from None
    return frozenset(parsed)


@dataclass
class DebertaConfig:
    """
    Settings for DisentangledSelfAttention.

    Defaults follow the DeBERTa-base attention block, except that relative
    attention is off unless asked for.

    Attributes:
        hidden_size: Hidden state width (must be divisible by num_attention_heads)
        num_attention_heads: Number of attention heads
        hidden_dropout_prob: Dropout applied to the relative embeddings
        attention_probs_dropout_prob: Dropout applied to attention weights
        relative_attention: Whether relative position biases are computed
        max_relative_positions: Relative embedding half-width (< 1 → use
                                max_position_embeddings)
        max_position_embeddings: Maximum absolute sequence length
        pos_att_type: Enabled bias kinds (string, list or set; normalized to
                      a frozenset of PositionAttentionType)
        talking_head: Whether to mix scores/weights across heads
    """
    hidden_size: int = 768
    num_attention_heads: int = 12
    hidden_dropout_prob: float = 0.1
    attention_probs_dropout_prob: float = 0.1
    relative_attention: bool = False
    max_relative_positions: int = -1
    max_position_embeddings: int = 512
    pos_att_type: FrozenSet[PositionAttentionType] = field(default_factory=frozenset)
    talking_head: bool = False

    def __post_init__(self):
        self.pos_att_type = parse_pos_att_type(self.pos_att_type)

        if self.hidden_size <= 0:
            raise ConfigurationError(f"hidden_size must be positive, got {self.hidden_size}")
        if self.num_attention_heads <= 0:
            raise ConfigurationError(
                f"num_attention_heads must be positive, got {self.num_attention_heads}"
            )
        if self.hidden_size % self.num_attention_heads != 0:
            raise ShapeError(
                f"hidden_size ({self.hidden_size}) must be divisible by "
                f"num_attention_heads ({self.num_attention_heads})"
            )
        for name in ("hidden_dropout_prob", "attention_probs_dropout_prob"):
            p = getattr(self, name)
            if not 0.0 <= p < 1.0:
                raise ConfigurationError(f"{name} must be in [0, 1), got {p}")
        if self.relative_attention and self.effective_max_relative_positions < 1:
            raise ConfigurationError(
                "relative_attention needs max_relative_positions >= 1 or "
                f"max_position_embeddings >= 1, got {self.max_relative_positions} "
                f"and {self.max_position_embeddings}"
            )

    @property
    def attention_head_size(self) -> int:
        return self.hidden_size // self.num_attention_heads

    @property
    def all_head_size(self) -> int:
        return self.attention_head_size * self.num_attention_heads

    @property
    def effective_max_relative_positions(self) -> int:
        """max_relative_positions, falling back to max_position_embeddings when < 1."""
        if self.max_relative_positions < 1:
            return self.max_position_embeddings
        return self.max_relative_positions

    def has_pos_att_type(self, kind: PositionAttentionType) -> bool:
        return kind in self.pos_att_type

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "DebertaConfig":
        """
        Build a config from a dict, ignoring keys the layer does not use.

        This lets a full model config (vocab_size, num_hidden_layers, ...)
        be passed in directly.

        Example:
            >>> cfg = DebertaConfig.from_dict({"hidden_size": 8,
            ...     "num_attention_heads": 2, "vocab_size": 100})
            >>> cfg.attention_head_size
            4
        """
        known = {f.name for f in fields(cls)}
        kwargs = {key: value for key, value in config.items() if key in known}
        # Published configs use null for "not set"
        if kwargs.get("max_relative_positions") is None:
            kwargs.pop("max_relative_positions", None)
        return cls(**kwargs)

    @classmethod
    def from_json_file(cls, path: Union[str, Path]) -> "DebertaConfig":
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path, "r") as f:
            return cls.from_dict(json.load(f))

    def to_dict(self) -> Dict[str, Any]:
        """Plain-dict form; pos_att_type becomes the "c2p|p2c" string."""
        result = {f.name: getattr(self, f.name) for f in fields(self)}
        result["pos_att_type"] = "|".join(
            kind.value for kind in _TYPE_ORDER if kind in self.pos_att_type
        )
        return result
