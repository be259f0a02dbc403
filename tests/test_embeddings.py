"""Tests for relative embedding tables."""

import pytest
import torch
from src.deberta.config import DebertaConfig
from src.deberta.embeddings import RelativeEmbeddings, window_relative_embeddings
from src.deberta.errors import ConfigurationError


class TestRelativeEmbeddings:
    """Tests for the relative embedding table."""

    def test_table_shape(self):
        rel_emb = RelativeEmbeddings(max_relative_positions=5, hidden_size=8)
        assert rel_emb().shape == (10, 8)

    def test_from_config(self):
        config = DebertaConfig(hidden_size=16, num_attention_heads=4, relative_attention=True,
                               max_relative_positions=-1, max_position_embeddings=32)

        rel_emb = RelativeEmbeddings.from_config(config)

        assert rel_emb.max_relative_positions == 32
        assert rel_emb().shape == (64, 16)

    def test_from_config_without_relative_attention_raises(self):
        with pytest.raises(ConfigurationError):
            RelativeEmbeddings.from_config(DebertaConfig(hidden_size=8, num_attention_heads=2))

    def test_invalid_size_raises(self):
        with pytest.raises(ConfigurationError):
            RelativeEmbeddings(max_relative_positions=0, hidden_size=8)

    def test_embeddings_are_learned(self):
        rel_emb = RelativeEmbeddings(max_relative_positions=4, hidden_size=8)

        window_relative_embeddings(rel_emb(), 4, 2).sum().backward()

        assert rel_emb.rel_embeddings.weight.grad is not None
        # Only the windowed rows receive gradient
        assert rel_emb.rel_embeddings.weight.grad[2:6].abs().sum() > 0
        assert rel_emb.rel_embeddings.weight.grad[:2].abs().sum() == 0
        assert rel_emb.rel_embeddings.weight.grad[6:].abs().sum() == 0


class TestWindow:
    """Tests for windowing the table around its center."""

    def test_window_rows(self):
        table = torch.arange(10, dtype=torch.float)[:, None].expand(10, 4)

        window = window_relative_embeddings(table, max_relative_positions=5, span=3)

        assert window.shape == (1, 6, 4)
        assert window[0, :, 0].tolist() == [2.0, 3.0, 4.0, 5.0, 6.0, 7.0]

    def test_full_span_is_whole_table(self):
        table = torch.randn(8, 4)

        window = window_relative_embeddings(table, max_relative_positions=4, span=4)

        assert torch.equal(window[0], table)

    def test_forward_returns_embedding_weight(self):
        rel_emb = RelativeEmbeddings(max_relative_positions=6, hidden_size=4)

        assert rel_emb() is rel_emb.rel_embeddings.weight
