"""HTTP surface: routes and the SSE transport."""
