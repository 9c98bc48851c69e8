"""Infrastructure: gateway/REST adapters, persistence and in-process stores."""
