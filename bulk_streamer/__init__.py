"""Bulk Facebook Live streamer: queued jobs, ffmpeg supervision and a FastAPI control surface."""
