"""Concrete providers: Anthropic and OpenAI over HTTP, Claude Code and Codex as child processes."""
