"""Podcast collaborators: feed source, audio download, transcription, summarization.

Each module exposes a narrow protocol (`FeedSource`, `Acquirer`, `Deriver`,
`SummaryBackend`) plus the HTTP / AssemblyAI / OpenAI / LangChain implementation.
"""
