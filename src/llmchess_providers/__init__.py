"""
llmchess_providers: get a legal chess move for a FEN from interchangeable providers.

Modules:
- config: settings loader (YAML + env)
- move_validator: UCI/SAN parsing and legality helpers
- errors: error taxonomy, classification and recovery plans
- rate_limit: per-provider request queue with per-model admission control
- providers: remote LLM and local engine move providers
- registry: provider lookup by id
- fallback: circuit breaker and provider substitution
- orchestrator: MoveOrchestrator facade with request de-duplication
"""
