"""
Relative position embeddings for disentangled attention.

Implements:
- The learned relative embedding table (2 × max_relative_positions rows)
- Windowing of that table to the span a given call actually needs

How the Table is Laid Out
-------------------------
Row r of the table holds the embedding for relative distance
r - max_relative_positions:

    row:        0     1    ...   max_rel-1   max_rel   ...   2·max_rel-1
    distance: -max_rel  ...          -1         0      ...    max_rel-1

For a short sequence we do not need every row. With
attention_span = min(max(query_len, key_len), max_relative_positions), the
rows [max_rel - span, max_rel + span) cover every distance the call can see
(anything further is clamped onto the window edge, see relative_position.py).

Example with max_relative_positions=5 and seq_len=3 (span=3):

    full table rows:  0 1 [2 3 4 5 6 7] 8 9
                           ↑ window ↑
    window rows:          0 1 2 3 4 5   ← distance = window_row - 3

The table is a persistent weight owned by the encoder; the attention layer
only reads it during a forward pass.
"""

import torch.nn as nn

from .errors import ConfigurationError


def window_relative_embeddings(rel_embeddings, max_relative_positions, span):
    """
    Slice the rows for distances [-span, span) and add a batch axis.

    Args:
        rel_embeddings: Table of shape (2 * max_relative_positions, hidden_size)
        max_relative_positions: Half-width of the table
        span: Attention span for this call (<= max_relative_positions)

    Returns:
        window: Tensor of shape (1, 2 * span, hidden_size)
    """
    return rel_embeddings[max_relative_positions - span:max_relative_positions + span, :].unsqueeze(0)


class RelativeEmbeddings(nn.Module):
    """
    Learned relative position embedding table.

    Produces the `rel_embeddings` tensor that DisentangledSelfAttention
    consumes.
    """

    def __init__(self, max_relative_positions, hidden_size):
        """
        Args:
            max_relative_positions: Half-width of the table; the table holds
                                    2 * max_relative_positions rows
            hidden_size: Embedding width (same as the hidden states)
        """
        super().__init__()
        if max_relative_positions < 1:
            raise ConfigurationError(
                f"max_relative_positions must be >= 1, got {max_relative_positions}"
            )
        self.max_relative_positions = max_relative_positions
        self.hidden_size = hidden_size
        self.rel_embeddings = nn.Embedding(max_relative_positions * 2, hidden_size)

    @classmethod
    def from_config(cls, config):
        if not config.relative_attention:
            raise ConfigurationError("Relative embeddings require relative_attention=True")
        return cls(config.effective_max_relative_positions, config.hidden_size)

    def forward(self):
        """
        Return the whole table, shape (2 * max_relative_positions, hidden_size).

        The attention layer does its own windowing, so callers pass the full
        table: `attention(hidden_states, rel_embeddings=rel_emb())`.
        """
        return self.rel_embeddings.weight
