"""
Relative position tables and the index algebra of disentangled attention.

What is a Relative Position Table?
----------------------------------
For every (query, key) pair we store the signed distance between them:

    T[0, i, j] = i - j

For query_size=3, key_size=4:

         key j →   0   1   2   3
    query i = 0 [  0, -1, -2, -3 ]
    query i = 1 [  1,  0, -1, -2 ]
    query i = 2 [  2,  1,  0, -1 ]

Positive values mean "key is to the left of the query", negative values mean
"key is to the right".

From Distances to Embedding Rows
--------------------------------
The relative embedding table has 2 × max_relative_positions rows. For one
call we only need a window of 2 × attention_span rows around its center,
where

    attention_span = min(max(query_len, key_len), max_relative_positions)

Inside that window, distance d lives at row d + attention_span. Distances
further away than the span are clamped onto the edge rows:

    c2p_index = clamp( T + span, 0, 2·span - 1)   ← content-to-position
    p2c_index = clamp(-T + span, 0, 2·span - 1)   ← position-to-content

Example with span=2 (window rows 0..3):

    distance:   -3  -2  -1   0   1   2   3
    c2p row:     0   0   1   2   3   3   3
    p2c row:     3   3   3   2   1   0   0

The clamp is what keeps every index valid, even for extreme offsets. An
off-by-one here does not crash; it silently shifts every bias by one
position, so these helpers are kept tiny and tested in isolation.

Expand Helpers
--------------
torch.gather needs an index tensor with the same rank as its input, so the
(1, 1, q, k) index tables get broadcast to (batch, heads, q, k) before the
gather. The three *_dynamic_expand helpers compute those target shapes.
"""

import torch

from .errors import InvalidRankError, ShapeError


def build_relative_position(query_size, key_size, device=None):
    """
    Build the relative position table between queries and keys.

    Args:
        query_size: Number of query positions (positive int)
        key_size: Number of key positions (positive int)
        device: Device for the returned tensor (default: CPU)

    Returns:
        rel_pos_ids: LongTensor of shape (1, query_size, key_size) with
                     rel_pos_ids[0, i, j] = i - j

    Raises:
        ShapeError: If either size is not positive

    Example:
        >>> build_relative_position(2, 3)
        tensor([[[ 0, -1, -2],
                 [ 1,  0, -1]]])
    """
    if query_size <= 0 or key_size <= 0:
        raise ShapeError(
            f"query_size and key_size must be positive, got {query_size} and {key_size}"
        )

    q_ids = torch.arange(query_size, dtype=torch.long, device=device)
    k_ids = torch.arange(key_size, dtype=torch.long, device=device)

    # (query_size, 1) - (1, key_size) → (query_size, key_size)
    rel_pos_ids = q_ids[:, None] - k_ids.view(1, -1).repeat(query_size, 1)

    return rel_pos_ids.unsqueeze(0)


def normalize_relative_position(relative_pos):
    """
    Bring a relative position table to rank 4: (batch or 1, 1, query, key).

    Rank 2 (q, k)       → (1, 1, q, k)
    Rank 3 (b, q, k)    → (b, 1, q, k)
    Rank 4              → unchanged

    Raises:
        InvalidRankError: For any other rank. Silent coercion would hide a
                          caller bug, so we refuse.
    """
    if relative_pos.dim() == 2:
        return relative_pos.unsqueeze(0).unsqueeze(0)
    elif relative_pos.dim() == 3:
        return relative_pos.unsqueeze(1)
    elif relative_pos.dim() == 4:
        return relative_pos
    raise InvalidRankError(
        f"Relative position ids must be of dim 2, 3 or 4. Got dim of {relative_pos.dim()}"
    )


def attention_span(query_len, key_len, max_relative_positions):
    """
    Number of relative distances (per side) that get their own embedding.

    Always <= max_relative_positions and <= max(query_len, key_len).
    """
    return min(max(query_len, key_len), max_relative_positions)


def c2p_index(relative_pos, span):
    """Rows of the windowed embedding table used by content-to-position."""
    return torch.clamp(relative_pos + span, 0, span * 2 - 1)


def p2c_index(relative_pos, span):
    """Rows of the windowed embedding table used by position-to-content."""
    return torch.clamp(-relative_pos + span, 0, span * 2 - 1)


def c2p_dynamic_expand(c2p_pos, query_layer, relative_pos):
    # (…, q, k) → (batch, heads, q, k)
    return c2p_pos.expand(
        [query_layer.size(0), query_layer.size(1), query_layer.size(2), relative_pos.size(-1)]
    )


def p2c_dynamic_expand(c2p_pos, query_layer, key_layer):
    # (…, k, k) → (batch, heads, k, k)
    return c2p_pos.expand(
        [query_layer.size(0), query_layer.size(1), key_layer.size(-2), key_layer.size(-2)]
    )


def pos_dynamic_expand(pos_index, p2c_att, key_layer):
    # (…, q, 1) → (batch, heads, q, k)
    return pos_index.expand(p2c_att.size()[:2] + (pos_index.size(-2), key_layer.size(-2)))
