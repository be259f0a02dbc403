"""
Exceptions raised by the disentangled attention layer.

Every error here is fail-fast: the layer raises at the point the problem is
detected and never returns a partial result. All of them subclass ValueError
so code that already guards attention calls with `except ValueError` keeps
working.
"""


class DebertaError(ValueError):
    """Base class for all disentangled-attention errors."""


class ShapeError(DebertaError):
    """
    A tensor or dimension has the wrong size.

    Raised when hidden_size is not divisible by num_attention_heads, when the
    query states do not have the width the query projection expects, or when
    hidden states are not (batch, seq_len, hidden_size).
    """


class InvalidRankError(DebertaError):
    """A relative position table has a rank outside {2, 3, 4}."""


class ConfigurationError(DebertaError):
    """
    The layer configuration is inconsistent.

    Covers bad config values, unknown position attention types, and a
    position bias term being enabled without the projection it needs.
    """
