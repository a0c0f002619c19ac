from messaging_sms.providers.assemble_numbers.client import AssembleNumbersProvider

__all__ = ["AssembleNumbersProvider"]
