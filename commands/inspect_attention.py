"""
Inspect a disentangled attention layer on random inputs.

Builds a DisentangledSelfAttention layer and a relative embedding table from
a config, feeds seeded random hidden states through it and prints where the
attention scores come from:

- content-to-content scores (Q·Kᵀ / scale)
- each enabled relative position term (c2p, p2c) on its own
- the final scores

Useful for sanity-checking a config before wiring it into an encoder: if a
bias term dwarfs the content scores, or the span is smaller than expected,
it shows up here.

Usage Examples:
---------------
    # DeBERTa-style c2p + p2c on a short sequence
    uv run python main.py inspect --pos-att-type "c2p|p2c" --seq-len 16

    # Incremental decoding: 4 query positions against 16 keys
    uv run python main.py inspect --pos-att-type "c2p|p2c" --seq-len 16 --query-len 4

    # Start from a config file and override one value
    uv run python main.py inspect --config deberta-base.json --heads 4
"""

import sys
from pathlib import Path

import torch
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Add src to path
sys.path.append(str(Path(__file__).parent.parent))

from src.deberta.attention import DisentangledSelfAttention
from src.deberta.config import DebertaConfig
from src.deberta.embeddings import RelativeEmbeddings
from src.deberta.errors import ShapeError
from src.deberta.relative_position import attention_span


def build_config(
    config_path=None,
    hidden_size=None,
    num_heads=None,
    pos_att_type=None,
    max_relative_positions=None,
    talking_head=False,
):
    """
    Build a DebertaConfig from an optional JSON file plus CLI overrides.

    Relative attention is always switched on: there is nothing to inspect
    without it.
    """
    if config_path is not None:
        values = DebertaConfig.from_json_file(config_path).to_dict()
    else:
        values = {"hidden_size": 64, "num_attention_heads": 4, "max_relative_positions": 32}

    if hidden_size is not None:
        values["hidden_size"] = hidden_size
    if num_heads is not None:
        values["num_attention_heads"] = num_heads
    if pos_att_type is not None:
        values["pos_att_type"] = pos_att_type
    if max_relative_positions is not None:
        values["max_relative_positions"] = max_relative_positions
    if talking_head:
        values["talking_head"] = True

    values["relative_attention"] = True
    return DebertaConfig.from_dict(values)


def _stats_row(name, tensor):
    return (
        name,
        str(tuple(tensor.shape)),
        f"{tensor.min().item():.4f}",
        f"{tensor.max().item():.4f}",
        f"{tensor.mean().item():.4f}",
        f"{tensor.abs().mean().item():.4f}",
    )


def inspect_attention(
    config,
    seq_len=16,
    query_len=None,
    batch_size=1,
    seed=42,
    device="cpu",
    debug=False,
    console=None,
):
    """
    Run one forward pass and report the score breakdown.

    Args:
        config: DebertaConfig (relative_attention must be on)
        seq_len: Key/value sequence length
        query_len: If set and smaller than seq_len, the first query_len hidden
                   states are used as query states (incremental path)
        batch_size: Batch size
        seed: Random seed for weights and inputs
        device: Torch device string
        debug: Forward debug diagnostics
        console: Optional rich Console (a new one is created otherwise)

    Returns:
        Dict with "scores", "content", and one entry per enabled bias term

    Raises:
        ShapeError: If query_len is outside [1, seq_len]
    """
    if query_len is not None and not 1 <= query_len <= seq_len:
        raise ShapeError(f"query_len must be in [1, seq_len={seq_len}], got {query_len}")

    console = console or Console()
    torch.manual_seed(seed)
    device = torch.device(device)

    layer = DisentangledSelfAttention(config).to(device)
    rel_emb = RelativeEmbeddings.from_config(config).to(device)
    layer.eval()
    rel_emb.eval()

    hidden_states = torch.randn(batch_size, seq_len, config.hidden_size, device=device)
    query_states = None
    if query_len is not None and query_len < seq_len:
        query_states = hidden_states[:, :query_len, :]
    actual_query_len = seq_len if query_states is None else query_len

    config_table = Table(title="Layer Configuration", show_header=True, header_style="bold cyan")
    config_table.add_column("Setting", style="cyan")
    config_table.add_column("Value", justify="right")
    for key, value in config.to_dict().items():
        config_table.add_row(key, str(value) if value != "" else "-")
    config_table.add_row("attention_span", str(attention_span(
        actual_query_len, seq_len, config.effective_max_relative_positions
    )))
    config_table.add_row("scale_factor", str(layer.scale_factor))
    console.print(config_table)
    console.print()

    with torch.no_grad():
        scores = layer(
            hidden_states,
            query_states=query_states,
            rel_embeddings=rel_emb(),
            debug=debug,
        )

        # Recompute the pieces separately for the breakdown
        query_layer, key_layer, _ = layer.project(hidden_states, query_states)
        query_layer = query_layer / (query_layer.size(-1) * layer.scale_factor) ** 0.5
        content = torch.matmul(query_layer, key_layer.transpose(-1, -2))
        terms = {}
        if layer.pos_att_type:
            _, terms = layer.disentangled_att_bias(
                query_layer, key_layer, None, rel_emb(), layer.scale_factor, return_terms=True
            )

    results = {"scores": scores, "content": content}
    results.update(terms)

    stats_table = Table(title="Score Breakdown", show_header=True, header_style="bold cyan")
    stats_table.add_column("Term", style="cyan")
    stats_table.add_column("Shape", justify="right")
    stats_table.add_column("Min", justify="right")
    stats_table.add_column("Max", justify="right")
    stats_table.add_column("Mean", justify="right")
    stats_table.add_column("Mean |x|", justify="right", style="bold yellow")
    stats_table.add_row(*_stats_row("content→content", content))
    for name, term in terms.items():
        stats_table.add_row(*_stats_row(name, term))
    stats_table.add_row(*_stats_row("total", scores))
    console.print(stats_table)
    console.print()

    if not terms:
        console.print(Panel(
            "[yellow]No c2p/p2c term is enabled: scores are pure content-to-content.[/yellow]\n"
            "Pass --pos-att-type \"c2p|p2c\" to see the relative position biases.",
            style="yellow",
            expand=False,
        ))

    return results


def main(args):
    """Entry point for `main.py inspect`."""
    config = build_config(
        config_path=args.config,
        hidden_size=args.hidden_size,
        num_heads=args.heads,
        pos_att_type=args.pos_att_type,
        max_relative_positions=args.max_relative_positions,
        talking_head=args.talking_head,
    )
    console = Console()
    console.print(Panel(
        "[bold blue]Disentangled Attention Inspector[/bold blue]\n"
        f"batch={args.batch}, seq_len={args.seq_len}, query_len={args.query_len or args.seq_len}",
        style="bold blue",
        expand=False,
    ))
    console.print()
    return inspect_attention(
        config,
        seq_len=args.seq_len,
        query_len=args.query_len,
        batch_size=args.batch,
        seed=args.seed,
        device=args.device,
        debug=args.debug,
        console=console,
    )
