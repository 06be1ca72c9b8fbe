"""Scripture table for the morning delivery.

``CATEGORY_KEYWORDS`` is ordered: the first category whose keyword appears in the
(lower-cased) problem text wins. Anything unmatched falls back to ``DEFAULT_CATEGORY``.
"""

from __future__ import annotations

DEFAULT_CATEGORY = "general"

CATEGORY_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("anxiety", ("anxiety", "worry", "stress")),
    ("fear", ("fear",)),
    ("sadness", ("sad", "depress")),
    ("doubt", ("doubt", "faith")),
    ("relationships", ("relation",)),
)

BIBLE_VERSES: dict[str, list[dict[str, str]]] = {
    "anxiety": [
        {"verse": "Philippians 4:6-7", "text": "Do not be anxious about anything, but in every situation, by prayer and petition, with thanksgiving, present your requests to God. And the peace of God will guard your hearts."},
        {"verse": "Matthew 6:34", "text": "Therefore do not worry about tomorrow, for tomorrow will worry about itself. Each day has enough trouble of its own."},
        {"verse": "1 Peter 5:7", "text": "Cast all your anxiety on him because he cares for you."},
    ],
    "fear": [
        {"verse": "Isaiah 41:10", "text": "So do not fear, for I am with you; do not be dismayed, for I am your God. I will strengthen you and help you."},
        {"verse": "2 Timothy 1:7", "text": "For God has not given us a spirit of fear, but of power and of love and of a sound mind."},
        {"verse": "Psalm 27:1", "text": "The LORD is my light and my salvation, whom shall I fear? The LORD is the stronghold of my life, of whom shall I be afraid?"},
    ],
    "sadness": [
        {"verse": "Psalm 34:18", "text": "The LORD is close to the brokenhearted and saves those who are crushed in spirit."},
        {"verse": "John 16:33", "text": "In this world you will have trouble. But take heart! I have overcome the world."},
        {"verse": "Psalm 30:5", "text": "Weeping may stay for the night, but rejoicing comes in the morning."},
    ],
    "doubt": [
        {"verse": "Hebrews 11:1", "text": "Now faith is confidence in what we hope for and assurance about what we do not see."},
        {"verse": "Mark 9:24", "text": "Immediately the boy's father exclaimed, 'I do believe; help me overcome my unbelief!'"},
        {"verse": "Romans 10:17", "text": "Faith comes from hearing the message, and the message is heard through the word about Christ."},
    ],
    "relationships": [
        {"verse": "1 Corinthians 13:4-7", "text": "Love is patient, love is kind. It does not envy, it does not boast, it is not proud. It always protects, always trusts, always hopes, always perseveres."},
        {"verse": "Ephesians 4:32", "text": "Be kind and compassionate to one another, forgiving each other, just as in Christ God forgave you."},
        {"verse": "Proverbs 17:17", "text": "A friend loves at all times, and a brother is born for a time of adversity."},
    ],
    "general": [
        {"verse": "John 3:16", "text": "For God so loved the world that he gave his one and only Son, that whoever believes in him shall not perish but have eternal life."},
        {"verse": "Jeremiah 29:11", "text": "For I know the plans I have for you, declares the LORD, plans to prosper you and not to harm you, plans to give you hope and a future."},
        {"verse": "Proverbs 3:5-6", "text": "Trust in the LORD with all your heart and lean not on your own understanding; in all your ways submit to him, and he will make your paths straight."},
        {"verse": "Romans 8:28", "text": "And we know that in all things God works for the good of those who love him, who have been called according to his purpose."},
        {"verse": "Psalm 46:1", "text": "God is our refuge and strength, an ever-present help in trouble."},
    ],
}
