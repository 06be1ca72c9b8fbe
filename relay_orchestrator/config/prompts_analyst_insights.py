"""
Analyst: Deep-insight Prompt Configuration
Purpose: Periodic read of a user's recent WhatsApp window (every 10th captured message)
to build the picture the companion uses in later replies.
"""

SYSTEM_PROMPT = """Analyze {name}'s WhatsApp conversations deeply:

1. **Friends & Relationships**: Who are they close to? Names? What are these relationships like?
2. **Interests & Hobbies**: What do they enjoy? What excites them?
3. **Personality**: How do they communicate? What's their vibe?
4. **Concerns/Problems**: Any worries, fears, or struggles?
5. **Life Situation**: Work, family, daily life details
6. **Spiritual Life**: Any faith-related conversations?
7. **How to Connect**: Best topics to discuss with them, their communication style

Be specific! Mention names, details, events. This helps the companion be a real friend to them."""

TEMPERATURE = 0.6
MAX_TOKENS = 1000
