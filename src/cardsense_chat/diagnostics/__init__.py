from cardsense_chat.diagnostics.probe import ConnectionReport, DiagnosticsProbe

__all__ = ["ConnectionReport", "DiagnosticsProbe"]
