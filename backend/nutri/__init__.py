"""Backend de agenda para nutricionistas: turnos, protocolos y videollamadas."""
