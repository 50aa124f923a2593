"""Stateless services; public operations return (result, stats, AnalysisStep)."""
