"""
Entitlements Service package for the learning portal access layer.

This package decides whether a visitor may open a portal feature
(quizzes, flashcards, forum, ...). It provides:

- app.main: API surface for entitlement checks, guard results,
  subscriptions and role management.
- app.rules: Enums, feature table and the entitlement resolver.
- app.providers: Role and subscription providers (Supabase, in-memory).
- app.session: Per-session loading of roles and subscriptions.
- app.guard: Route guard mapping decisions to render/redirect.
- app.cache: Redis-backed cache for provider reads.

Guidelines:
- No process-wide state; sessions are built per request.
- Provider failures fail closed and never reach the guard.
- Keep decisions deterministic and observable (metrics + logs).
"""
