"""Pure domain logic: dates, watermark, blockers, RAG, prompts and formatting."""
