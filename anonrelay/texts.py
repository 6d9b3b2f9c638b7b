"""User- and operator-facing notices."""

WELCOME = (
    "Welcome to the anonymous messaging bot! Any message you send will be "
    "forwarded anonymously to the bot owner."
)
MESSAGE_SENT = "Your message has been received. Please wait for a response."
MESSAGE_READ = "Your message has been read."
ERROR_PROCESSING = "Error processing your message. Please try again later."
UNSUPPORTED_MEDIA = "The bot owner sent a type of message that cannot be forwarded."
BLOCKED = "You have been blocked by the bot administrator. Your messages will no longer be received."
UNBLOCKED = "Your restriction has been lifted. You can now send messages again."

NEW_MESSAGES = "You have {count} new message(s)!\nUse /newmsg to view them."
NO_NEW_MESSAGES = "You have no new messages."
DRAIN_BUSY = "Already processing new messages."
DRAIN_ERROR = "Error processing new messages."
REPLY_SENT = "Reply sent to User #{pseudonym_id}."
REPLY_UNRESOLVED = "Cannot reply to this message: the original sender is unknown."
REPLY_FAILED = "Error sending your reply. Please try again."

FORWARD_HEADER = "Message:\n\n======================\n\nAnonymous ID: User #{pseudonym_id}\n\n"

USER_NOT_FOUND = "User #{pseudonym_id} not found."
USER_BLOCKED = "User #{pseudonym_id} has been blocked.\nReason: {reason}"
USER_UNBLOCKED = "User #{pseudonym_id} has been unblocked."
NO_BLOCKED_USERS = "No users are currently blocked."
BLOCKED_LIST_HEADER = "Blocked Users:\n\n"
BLOCKED_LIST_ENTRY = "User #{pseudonym_id}\nReason: {reason}\n\n"
INVALID_ID = "Invalid format. Use: {usage}"

NOTE_ADDED = "Note added to User #{pseudonym_id}:\n{entry}\n\nAll notes:\n{notes}"
NOTE_REQUIRED = "Note text is required."
NO_NOTES = "No notes found for User #{pseudonym_id}."
NOTES = "Notes for User #{pseudonym_id}:\n\n{notes}"

BROADCAST_NEEDS_REPLY = "Please reply to the message you want to broadcast with the /broadcast command."
BROADCAST_STARTED = "Broadcasting message..."
BROADCAST_UNSUPPORTED = "This type of message cannot be broadcast."
BROADCAST_DONE = "Broadcast complete!\nSent to: {sent} users\nFailed: {failed} users"

CHAT_ID = "This chat ID is: {chat_ref}"

USER_DETAILS = (
    "User Details for Anonymous ID: #{pseudonym_id}\n\n"
    "User key: {user_key}\n"
    "Username: {username}\n"
    "Name: {name}\n"
    "First Contact: {created_at}\n"
    "Last Activity: {last_activity}"
)

HELP = """Owner Commands:

Message Management:
/newmsg - Show new messages
/broadcast - Send a message to all users (reply to a message with this command)

User Management:
/block #ID [reason: optional reason] - Block a user
/unblock #ID - Unblock a user
/blocklist - Show all blocked users

User Notes:
/note #ID Your note text - Add a note to a user
/viewnotes #ID - View all notes for a user

Utility:
/getchatid - Get the chat ID of the current chat
/help - Show this help message
"""
