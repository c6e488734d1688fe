"""Out Loud relay: audio in, live transcript out, analysis at the end."""
