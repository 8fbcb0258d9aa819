"""
Quiz Generation Pipeline
generation/

Steps:
1. PDF text extraction   — parsing.pdf_text: bytes → text, pages split by \\f
2. Chunker               — parsing.chunker: heading pass, fixed-size fallback, filter
3. Chunk order           — shuffled passes over the chunks, one slot per question
4. Question Generator    — GPT call per slot, JSON mode, timeout, retry/backoff
5. Normalizer            — repair model JSON into exactly 5 propositions, ≥1 true
6. Orchestrator          — start / continue / get under a per-session guard,
                           persisting every step to the session store
"""
