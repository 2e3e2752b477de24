"""
Application Services

Business logic services used across the application.

Note: Imports are lazy to avoid circular import issues.
Use explicit imports from submodules when needed:
    from app.services.hs_codes import normalize, format_code
    from app.services.duty_calculator import calculate_duties
    from app.services.document_analysis import DocumentAnalyzer
"""


def __getattr__(name):
    """Lazy import to avoid circular imports."""
    if name in ('normalize', 'format_code', 'level', 'ancestors'):
        from app.services import hs_codes
        return getattr(hs_codes, name)

    if name in ('DutyCalculation', 'calculate_duties', 'compute_caf', 'convert_to_mad'):
        from app.services.duty_calculator import (
            DutyCalculation, calculate_duties, compute_caf, convert_to_mad
        )
        mapping = {
            'DutyCalculation': DutyCalculation,
            'calculate_duties': calculate_duties,
            'compute_caf': compute_caf,
            'convert_to_mad': convert_to_mad,
        }
        return mapping[name]

    if name in ('DocumentAnalyzer', 'AnalysisResult', 'PdfBatchResult'):
        from app.services.document_analysis import AnalysisResult, DocumentAnalyzer, PdfBatchResult
        mapping = {
            'DocumentAnalyzer': DocumentAnalyzer,
            'AnalysisResult': AnalysisResult,
            'PdfBatchResult': PdfBatchResult,
        }
        return mapping[name]

    raise AttributeError(f"module 'app.services' has no attribute '{name}'")
