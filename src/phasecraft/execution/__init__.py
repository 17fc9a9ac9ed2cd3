"""Task/phase execution engine, code generation, and progress updates."""
