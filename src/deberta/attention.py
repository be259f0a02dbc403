"""
Disentangled self-attention (DeBERTa).

Implements:
- Fused Q/K/V projection, including the per-head weight split used for
  incremental query states
- Content-to-content scores with DeBERTa's scaling
- Content-to-position (c2p) and position-to-content (p2c) relative biases
- Talking-heads insertion points and the masked softmax / value step

What Does "Disentangled" Mean?
------------------------------
In BERT, each token is ONE vector: word embedding + position embedding,
added together before the first layer. Content and position get mixed into
the same numbers and attention cannot tell them apart again.

DeBERTa keeps them separate. Every token has a content vector (the hidden
state) and, for every pair of tokens, there is a relative position vector
P[i - j] taken from a learned table. The score between query i and key j is
split into three terms:

    A[i, j] = Qc[i] · Kc[j]            ← content-to-content  (what vs what)
            + Qc[i] · Kr[δ(i, j)]      ← content-to-position (c2p)
            + Kc[j] · Qr[δ(j, i)]      ← position-to-content (p2c)

where Qc/Kc are content projections of the hidden states, Kr/Qr are
projections of the relative embeddings (pos_proj / pos_q_proj), and δ is the
clamped relative distance (see relative_position.py).

Example intuition for "the cat sat":
- c2p: "sat" (content) asks "what is one position to my left?"
- p2c: "one position to the left" (position) asks "is that token 'cat'?"

Scaling
-------
Plain attention divides by √d. With more terms added together the scores
grow, so DeBERTa divides by √(d · scale_factor) with

    scale_factor = 1 + len(pos_att_type)

e.g. pos_att_type = {c2p, p2c} → scale = √(3d). The content query is scaled
once (which scales both content-to-content and c2p), and the p2c position
query is scaled by the same amount separately.

Shape Flow (batch=2, seq_len=10, hidden=768, heads=12, max_rel=256)
--------------------------------------------------------------------
    hidden_states                 (2, 10, 768)
        ↓ in_proj (768 → 2304), split per head
    Q, K, V                       (2, 12, 10, 64) each
        ↓ + q_bias (Q only), + v_bias (V only)
    content scores Q·Kᵀ/scale     (2, 12, 10, 10)

    rel_embeddings                (512, 768)
        ↓ window to span=10 rows each side
    window                        (1, 20, 768)
        ↓ pos_proj / pos_q_proj, split per head
    Kr, Qr                        (1, 12, 20, 64)

    c2p: Q·Krᵀ → (2, 12, 10, 20) → gather by c2p_index → (2, 12, 10, 10)
    p2c: K·Qrᵀ → (2, 12, 10, 20) → gather by p2c_index → transpose → (2, 12, 10, 10)

    attention scores              (2, 12, 10, 10)

Note the missing key bias: Q and V get a learned additive bias, K does not.
That asymmetry comes from the reference architecture and is intentional.
"""

import math

import torch
import torch.nn as nn
import torch.nn.functional as F

from .config import PositionAttentionType
from .embeddings import window_relative_embeddings
from .errors import ConfigurationError, ShapeError
from .relative_position import (
    attention_span,
    build_relative_position,
    c2p_dynamic_expand,
    c2p_index,
    normalize_relative_position,
    p2c_dynamic_expand,
    p2c_index,
    pos_dynamic_expand,
)
from .talking_heads import TalkingHeads


def expand_attention_mask(attention_mask, query_len):
    """
    Bring an attention mask to (batch, 1, query_len, key_len).

    Mask convention: 1/True = attend, 0/False = masked (padding). This is
    the convention of DeBERTa tokenizers' `attention_mask` output.

    Rank 2 (batch, key_len): a padding mask. We build the pairwise mask
        mask[b, 0, i, j] = m[b, i] * m[b, j]
    so padded queries are masked as well as padded keys.
    Rank 3 (batch, q, k): add the head axis.
    Rank 4: unchanged.
    Any other rank raises ShapeError.

    If the mask has more query rows than there are queries (incremental
    decoding: queries are the leading positions), only the first query_len rows
    are kept.
    """
    if attention_mask.dim() == 2:
        extended = attention_mask.unsqueeze(1).unsqueeze(2)
        attention_mask = extended * extended.squeeze(-2).unsqueeze(-1)
    elif attention_mask.dim() == 3:
        attention_mask = attention_mask.unsqueeze(1)
    elif attention_mask.dim() != 4:
        raise ShapeError(
            f"Attention mask must be of dim 2, 3 or 4. Got dim of {attention_mask.dim()}"
        )

    if attention_mask.size(-2) > query_len:
        attention_mask = attention_mask[:, :, :query_len, :]

    return attention_mask


def masked_softmax(attention_scores, attention_mask=None, dim=-1):
    """
    Softmax that ignores masked positions.

    Masked positions are filled with the most negative finite value before
    the softmax and set to exactly 0 afterwards, so a fully masked row comes
    out as all zeros rather than NaN.

    Args:
        attention_scores: Scores of shape (batch, heads, q, k)
        attention_mask: Optional mask broadcastable to the scores
                        (1/True = attend, 0/False = masked)
        dim: Axis to normalize over

    Returns:
        attention_probs: Same shape as attention_scores
    """
    if attention_mask is None:
        return torch.softmax(attention_scores, dim=dim)

    rmask = ~(attention_mask.to(torch.bool))
    output = attention_scores.masked_fill(rmask, torch.finfo(attention_scores.dtype).min)
    output = torch.softmax(output, dim=dim)
    return output.masked_fill(rmask, 0.0)


class DisentangledSelfAttention(nn.Module):
    """
    DeBERTa's disentangled self-attention layer.

    The forward pass returns attention SCORES (batch, heads, query_len,
    key_len). Turning scores into a context vector (talking heads, masked
    softmax, dropout, weighted sum of values) is done by `attend()`, which
    callers run around this layer.

    Optional parts exist only when configured:
        talking_heads   iff config.talking_head
        pos_proj        iff relative_attention and (c2p or p2p)
        pos_q_proj      iff relative_attention and (p2c or p2p)
    Otherwise the attribute is None and no parameters are allocated.
    """

    def __init__(self, config):
        """
        Initialize disentangled self-attention.

        Args:
            config: DebertaConfig

        Raises:
            ShapeError: If hidden_size is not divisible by num_attention_heads
        """
        super().__init__()

        if config.hidden_size % config.num_attention_heads != 0:
            raise ShapeError(
                f"hidden_size ({config.hidden_size}) must be divisible by "
                f"num_attention_heads ({config.num_attention_heads})"
            )

        self.hidden_size = config.hidden_size
        self.num_attention_heads = config.num_attention_heads
        self.attention_head_size = config.hidden_size // config.num_attention_heads
        self.all_head_size = self.num_attention_heads * self.attention_head_size

        # One fused projection for Q, K, V. Rows are grouped per head:
        #   [q_head0, k_head0, v_head0, q_head1, k_head1, v_head1, ...]
        # each block attention_head_size rows tall.
        self.in_proj = nn.Linear(config.hidden_size, self.all_head_size * 3, bias=False)

        # Additive biases for Q and V only (no key bias, see module docstring)
        self.q_bias = nn.Parameter(torch.zeros(self.all_head_size, dtype=torch.float))
        self.v_bias = nn.Parameter(torch.zeros(self.all_head_size, dtype=torch.float))

        self.pos_att_type = frozenset(config.pos_att_type)
        self.relative_attention = config.relative_attention

        self.talking_heads = TalkingHeads(self.num_attention_heads) if config.talking_head else None

        if self.relative_attention:
            self.max_relative_positions = config.effective_max_relative_positions
            self.pos_dropout = nn.Dropout(config.hidden_dropout_prob)

            if config.has_pos_att_type(PositionAttentionType.C2P) or config.has_pos_att_type(PositionAttentionType.P2P):
                self.pos_proj = nn.Linear(config.hidden_size, self.all_head_size, bias=False)
            else:
                self.pos_proj = None

            if config.has_pos_att_type(PositionAttentionType.P2C) or config.has_pos_att_type(PositionAttentionType.P2P):
                self.pos_q_proj = nn.Linear(config.hidden_size, self.all_head_size)
            else:
                self.pos_q_proj = None
        else:
            self.max_relative_positions = None
            self.pos_dropout = None
            self.pos_proj = None
            self.pos_q_proj = None

        self.dropout = nn.Dropout(config.attention_probs_dropout_prob)

    def _has(self, kind):
        return kind in self.pos_att_type

    @property
    def scale_factor(self):
        """1 + number of enabled position attention kinds (p2p included)."""
        return 1 + len(self.pos_att_type)

    def transpose_for_scores(self, x):
        """(..., seq_len, all_head_size) → (batch, heads, seq_len, head_size)."""
        new_x_shape = x.size()[:-1] + (self.num_attention_heads, -1)
        x = x.view(new_x_shape)
        return x.permute(0, 2, 1, 3)

    def split_in_proj_weights(self):
        """
        Regroup the fused in_proj weight into separate Q, K, V weights.

        in_proj.weight has 3 * heads row blocks, ordered per head:

            block 0: q head0     block 3: q head1     ...
            block 1: k head0     block 4: k head1
            block 2: v head0     block 5: v head1

        We pick blocks i*3 + k for every head i and stack them, giving one
        (all_head_size, hidden_size) weight per k in (query, key, value).

        The results are fresh tensors (torch.cat copies), never views of
        in_proj.weight.

        Returns:
            (w_q, w_k, w_v): each of shape (all_head_size, hidden_size)
        """
        ws = self.in_proj.weight.chunk(self.num_attention_heads * 3, dim=0)
        return tuple(
            torch.cat([ws[i * 3 + k] for i in range(self.num_attention_heads)], dim=0)
            for k in range(3)
        )

    def project(self, hidden_states, query_states=None):
        """
        Project hidden states to per-head query, key and value layers.

        Two paths:

        STANDARD (query_states=None):
            in_proj(hidden_states) → (b, s, 3·all_head)
            → heads → (b, h, s, 3·head_size) → chunk(3) → Q, K, V

        INCREMENTAL (query_states given):
            Queries come from query_states (e.g. only the newest positions),
            keys and values from the full hidden_states:
                Q = query_states  @ w_qᵀ
                K = hidden_states @ w_kᵀ
                V = hidden_states @ w_vᵀ
            with (w_q, w_k, w_v) = split_in_proj_weights().

        Both paths then add q_bias to Q and v_bias to V. With
        query_states = hidden_states the two paths give the same result.

        Args:
            hidden_states: (batch, seq_len, hidden_size)
            query_states: Optional (batch, query_len, hidden_size),
                          query_len <= seq_len

        Returns:
            query_layer: (batch, heads, query_len, head_size)
            key_layer: (batch, heads, seq_len, head_size)
            value_layer: (batch, heads, seq_len, head_size)

        Raises:
            ShapeError: On wrong rank, width, batch size or query length
        """
        self._check_states("hidden_states", hidden_states)

        if query_states is None:
            qp = self.in_proj(hidden_states)
            query_layer, key_layer, value_layer = self.transpose_for_scores(qp).chunk(3, dim=-1)
        else:
            self._check_states("query_states", query_states)
            if query_states.size(0) != hidden_states.size(0):
                raise ShapeError(
                    f"query_states batch size ({query_states.size(0)}) does not match "
                    f"hidden_states batch size ({hidden_states.size(0)})"
                )
            if query_states.size(1) > hidden_states.size(1):
                raise ShapeError(
                    f"query_states length ({query_states.size(1)}) exceeds "
                    f"hidden_states length ({hidden_states.size(1)})"
                )

            w_q, w_k, w_v = self.split_in_proj_weights()
            query_layer = self.transpose_for_scores(F.linear(query_states, w_q))
            key_layer = self.transpose_for_scores(F.linear(hidden_states, w_k))
            value_layer = self.transpose_for_scores(F.linear(hidden_states, w_v))

        # (all_head,) → (1, heads, 1, head_size), broadcast over batch and sequence
        query_layer = query_layer + self.transpose_for_scores(self.q_bias[None, None, :])
        value_layer = value_layer + self.transpose_for_scores(self.v_bias[None, None, :])

        return query_layer, key_layer, value_layer

    def _check_states(self, name, states):
        if states.dim() != 3:
            raise ShapeError(
                f"{name} must be (batch, seq_len, hidden_size), got shape {tuple(states.shape)}"
            )
        if states.size(-1) != self.hidden_size:
            raise ShapeError(
                f"{name} width ({states.size(-1)}) does not match hidden_size ({self.hidden_size})"
            )

    def forward(
        self,
        hidden_states,
        query_states=None,
        relative_pos=None,
        rel_embeddings=None,
        return_value_layer=False,
        debug=False,
    ):
        """
        Compute disentangled attention scores.

        Steps:
            1. Project to Q, K, V (see `project`)
            2. Q = Q / √(head_size · scale_factor)
            3. scores = Q · Kᵀ                       (content-to-content)
            4. scores += disentangled_att_bias(...)  (if relative attention
               is on, rel_embeddings is given and pos_att_type is not
               empty; the embeddings go through pos_dropout first, which
               is only active in training mode)

        Args:
            hidden_states: (batch, seq_len, hidden_size)
            query_states: Optional (batch, query_len, hidden_size) for
                          incremental decoding
            relative_pos: Optional relative position table of rank 2, 3 or 4
                          (built from the sequence lengths when None)
            rel_embeddings: Optional relative embedding table
                            (2 * max_relative_positions, hidden_size)
            return_value_layer: If True, also return the value layer so the
                                caller can run `attend()`
            debug: If True, print diagnostics when NaN/Inf show up

        Returns:
            attention_scores: (batch, heads, query_len, seq_len)
            value_layer: (Optional) (batch, heads, seq_len, head_size),
                         only if return_value_layer=True
        """
        query_layer, key_layer, value_layer = self.project(hidden_states, query_states)

        scale_factor = self.scale_factor
        scale = math.sqrt(query_layer.size(-1) * scale_factor)
        query_layer = query_layer / scale

        # (b, h, q, d) @ (b, h, d, k) → (b, h, q, k)
        attention_scores = torch.matmul(query_layer, key_layer.transpose(-1, -2))

        if self.relative_attention and rel_embeddings is not None and self.pos_att_type:
            rel_embeddings = self.pos_dropout(rel_embeddings)
            rel_att = self.disentangled_att_bias(
                query_layer, key_layer, relative_pos, rel_embeddings, scale_factor
            )
            attention_scores = attention_scores + rel_att

        if debug and (torch.isnan(attention_scores).any() or torch.isinf(attention_scores).any()):
            print(f"  [DEBUG] NaN/Inf in disentangled attention scores!")
            print(f"  Query stats: min={query_layer.min():.4f}, max={query_layer.max():.4f}, mean={query_layer.mean():.4f}")
            print(f"  Key stats: min={key_layer.min():.4f}, max={key_layer.max():.4f}, mean={key_layer.mean():.4f}")
            if rel_embeddings is not None:
                print(f"  Rel embedding stats: min={rel_embeddings.min():.4f}, max={rel_embeddings.max():.4f}")

        if return_value_layer:
            return attention_scores, value_layer
        return attention_scores

    def disentangled_att_bias(
        self,
        query_layer,
        key_layer,
        relative_pos,
        rel_embeddings,
        scale_factor,
        return_terms=False,
    ):
        """
        Compute the relative position bias: c2p + p2c.

        The Algorithm
        -------------
        1. Build the relative position table if none is given, and bring it
           to rank 4: (b or 1, 1, q, k).
        2. span = min(max(q, k), max_relative_positions)
        3. Window rel_embeddings to rows [max_rel - span, max_rel + span).
        4. Kr = pos_proj(window)   (if c2p or p2p)
           Qr = pos_q_proj(window) (if p2c or p2p)
        5. c2p: Q · Krᵀ gives, for each query, a score against every relative
           distance (b, h, q, 2·span). Gather column c2p_index[i, j] for
           each key j:

               c2p[b, h, i, j] = (Q · Krᵀ)[b, h, i, clamp(i - j + span)]

        6. p2c: Qr is rescaled by √(head_size · scale_factor). K · Qrᵀ gives
           (b, h, k, 2·span). Gather by p2c_index, which uses the NEGATED
           distance (the key is now the one "looking"), then transpose to
           (query, key) order:

               p2c[b, h, i, j] = (K · Qrᵀ)[b, h, j, clamp(-(j - i) + span)]

           When query_len != key_len (incremental decoding) the gather is
           done on a square (k × k) table and then the rows for the real
           queries are picked out with a second gather along the query axis,
           using column 0 of relative_pos as the row index.
        7. Add the enabled terms to a zero accumulator and return it.

        p2p is never added as a term. Enabling it only creates both
        projections; this matches the reference architecture.

        Args:
            query_layer: Scaled content query (batch, heads, q, head_size)
            key_layer: Content key (batch, heads, k, head_size)
            relative_pos: Optional table of rank 2, 3 or 4
            rel_embeddings: Table (2 * max_relative_positions, hidden_size),
                            already through pos_dropout
            scale_factor: 1 + len(pos_att_type)
            return_terms: If True, also return a dict of the individual terms
                          (keys "c2p" / "p2c", only for enabled kinds)

        Returns:
            score: Bias broadcastable to (batch, heads, q, k)
            terms: (Optional) dict of per-kind bias tensors

        Raises:
            InvalidRankError: If relative_pos rank is not 2, 3 or 4
            ConfigurationError: If an enabled term's projection is missing
            ShapeError: If rel_embeddings does not have the expected shape
        """
        query_len = query_layer.size(-2)
        key_len = key_layer.size(-2)

        if relative_pos is None:
            relative_pos = build_relative_position(query_len, key_len, query_layer.device)
        relative_pos = normalize_relative_position(relative_pos)
        relative_pos = relative_pos.long().to(query_layer.device)

        if rel_embeddings.dim() != 2 or rel_embeddings.size(-1) != self.hidden_size:
            raise ShapeError(
                f"rel_embeddings must be (2 * max_relative_positions, {self.hidden_size}), "
                f"got shape {tuple(rel_embeddings.shape)}"
            )
        if rel_embeddings.size(0) < self.max_relative_positions * 2:
            raise ShapeError(
                f"rel_embeddings has {rel_embeddings.size(0)} rows, expected "
                f"{self.max_relative_positions * 2} (2 * max_relative_positions)"
            )

        att_span = attention_span(query_len, key_len, self.max_relative_positions)
        rel_embeddings = window_relative_embeddings(rel_embeddings, self.max_relative_positions, att_span)

        use_c2p = self._has(PositionAttentionType.C2P)
        use_p2c = self._has(PositionAttentionType.P2C)
        use_p2p = self._has(PositionAttentionType.P2P)

        pos_key_layer = None
        if use_c2p or use_p2p:
            if self.pos_proj is None:
                raise ConfigurationError("c2p/p2p attention is enabled but pos_proj does not exist")
            pos_key_layer = self.transpose_for_scores(self.pos_proj(rel_embeddings))

        pos_query_layer = None
        if use_p2c or use_p2p:
            if self.pos_q_proj is None:
                raise ConfigurationError("p2c/p2p attention is enabled but pos_q_proj does not exist")
            pos_query_layer = self.transpose_for_scores(self.pos_q_proj(rel_embeddings))

        score = torch.zeros(1, dtype=query_layer.dtype, device=query_layer.device)
        terms = {}

        # Content → position
        if use_c2p:
            c2p_att = torch.matmul(query_layer, pos_key_layer.transpose(-1, -2))
            c2p_pos = c2p_index(relative_pos, att_span)
            c2p_att = torch.gather(
                c2p_att, dim=-1, index=c2p_dynamic_expand(c2p_pos, query_layer, relative_pos)
            )
            score = score + c2p_att
            terms["c2p"] = c2p_att

        # Position → content
        if use_p2c:
            pos_query_layer = pos_query_layer / math.sqrt(pos_query_layer.size(-1) * scale_factor)

            if query_len != key_len:
                r_pos = build_relative_position(key_len, key_len, query_layer.device)
            else:
                r_pos = relative_pos
            p2c_pos = p2c_index(r_pos, att_span)

            p2c_att = torch.matmul(key_layer, pos_query_layer.transpose(-1, -2))
            p2c_att = torch.gather(
                p2c_att, dim=-1, index=p2c_dynamic_expand(p2c_pos, query_layer, key_layer)
            ).transpose(-1, -2)

            if query_len != key_len:
                pos_index = relative_pos[:, :, :, 0].unsqueeze(-1)
                p2c_att = torch.gather(
                    p2c_att, dim=-2, index=pos_dynamic_expand(pos_index, p2c_att, key_layer)
                )
            score = score + p2c_att
            terms["p2c"] = p2c_att

        if return_terms:
            return score, terms
        return score

    def mix_logits(self, attention_scores):
        """Talking-heads mix before softmax (identity when disabled)."""
        if self.talking_heads is None:
            return attention_scores
        return self.talking_heads.mix_logits(attention_scores)

    def mix_weights(self, attention_probs):
        """Talking-heads mix after softmax (identity when disabled)."""
        if self.talking_heads is None:
            return attention_probs
        return self.talking_heads.mix_weights(attention_probs)

    def attend(self, attention_scores, value_layer, attention_mask=None, return_attention_weights=False):
        """
        Turn scores into a context vector.

            scores → mix_logits → masked softmax → dropout → mix_weights
                   → weights · V → merge heads

        Args:
            attention_scores: (batch, heads, q, k) from forward()
            value_layer: (batch, heads, k, head_size) from forward(..., return_value_layer=True)
            attention_mask: Optional mask, rank 2/3/4, 1 = attend, 0 = masked
            return_attention_weights: If True, also return the weights

        Returns:
            context_layer: (batch, q, all_head_size)
            attention_probs: (Optional) (batch, heads, q, k)
        """
        attention_scores = self.mix_logits(attention_scores)

        if attention_mask is not None:
            attention_mask = expand_attention_mask(attention_mask, attention_scores.size(-2))

        attention_probs = masked_softmax(attention_scores, attention_mask, dim=-1)
        attention_probs = self.dropout(attention_probs)
        attention_probs = self.mix_weights(attention_probs)

        # (b, h, q, k) @ (b, h, k, d) → (b, h, q, d) → (b, q, h·d)
        context_layer = torch.matmul(attention_probs, value_layer)
        context_layer = context_layer.permute(0, 2, 1, 3).contiguous()
        context_layer = context_layer.view(context_layer.size()[:-2] + (-1,))

        if return_attention_weights:
            return context_layer, attention_probs
        return context_layer
