"""
Talking-heads attention: learned mixing across the head axis.

Standard multi-head attention keeps heads fully independent until the output
projection. Talking-heads attention ("Talking-Heads Attention", Shazeer et al.
2020) lets heads exchange information around the softmax:

    scores  (batch, heads, q, k)
        ↓ head_logits_proj      ← mix raw logits across heads
    softmax over k
        ↓ head_weights_proj     ← mix normalized weights across heads
    weights (batch, heads, q, k)

Each projection is a bias-free (heads × heads) linear map applied at every
(query, key) cell. nn.Linear works on the last axis, so we move the head axis
there, project, and move it back:

    (b, h, q, k) → permute(0, 2, 3, 1) → (b, q, k, h)
                 → Linear(h, h)
                 → permute(0, 3, 1, 2) → (b, h, q, k)

When talking heads are disabled the attention layer holds no TalkingHeads at
all, so no parameters are allocated and both insertion points are identity.
"""

import torch
import torch.nn as nn


class TalkingHeads(nn.Module):
    """Pre- and post-softmax head mixing."""

    def __init__(self, num_heads):
        super().__init__()
        self.num_heads = num_heads
        self.head_logits_proj = nn.Linear(num_heads, num_heads, bias=False)
        self.head_weights_proj = nn.Linear(num_heads, num_heads, bias=False)

        # Start as a no-op, like a Dirac init; training moves it from there
        self.reset_to_identity()

    def reset_to_identity(self):
        """Make both mixes no-ops (each head only sees itself)."""
        with torch.no_grad():
            self.head_logits_proj.weight.copy_(torch.eye(self.num_heads))
            self.head_weights_proj.weight.copy_(torch.eye(self.num_heads))

    @staticmethod
    def _mix(proj, x):
        return proj(x.permute(0, 2, 3, 1)).permute(0, 3, 1, 2)

    def mix_logits(self, attention_scores):
        """Mix raw scores (batch, heads, q, k) across heads, before softmax."""
        return self._mix(self.head_logits_proj, attention_scores)

    def mix_weights(self, attention_probs):
        """Mix normalized weights (batch, heads, q, k) across heads, after softmax."""
        return self._mix(self.head_weights_proj, attention_probs)
