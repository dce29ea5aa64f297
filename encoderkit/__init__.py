"""Inference for BERT, RoBERTa and DistilBERT encoder models with NumPy."""

__version__ = "0.1.0"