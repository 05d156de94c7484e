"""Services layer: history baselines, caching, conversation state, response text."""
