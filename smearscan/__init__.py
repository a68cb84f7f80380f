"""
SmearScan Backend

Two-stage malaria diagnostic pipeline: a local CNN smear classifier
verified by a remote multimodal model, plus a lab-value risk predictor.
"""

__version__ = "1.0.0"
