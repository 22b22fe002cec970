"""isx-spine command-line interface (Typer)."""
