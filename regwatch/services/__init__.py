"""
Services layer - ingestion pipeline and optional LLM enrichment.
"""
