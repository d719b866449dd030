"""
Move providers.

- base: provider contract, model/option/result types
- remote_llm: OpenAI-compatible LLM transport behind a rate-limited request queue
- local_engine: UCI engine (Stockfish) driven through python-chess
"""
