"""mailbridge - forward new mail from an IMAP mailbox to Telegram."""
