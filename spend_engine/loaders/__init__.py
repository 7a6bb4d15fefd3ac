# spend_engine/loaders/__init__.py
from spend_engine.core.models import Bank
from spend_engine.errors import UnrecognizedFormatError
from spend_engine.loaders.csob import CsobLoader
from spend_engine.loaders.raiffeisen import RaiffeisenLoader
from spend_engine.loaders.revolut import RevolutLoader

BANK_LOADERS = {
    Bank.CSOB.value: CsobLoader,
    Bank.RAIFFEISEN.value: RaiffeisenLoader,
    Bank.REVOLUT.value: RevolutLoader,
}


def supported_banks():
    return list(BANK_LOADERS)


def resolve_bank(name):
    """Map a user supplied bank name onto its canonical spelling."""
    for bank in BANK_LOADERS:
        if str(name).strip().lower() == bank.lower():
            return bank
    raise UnrecognizedFormatError(
        f"Unsupported bank '{name}'. Supported banks: {', '.join(supported_banks())}",
        bank=str(name),
    )


def get_loader(name, base_currency="CZK"):
    return BANK_LOADERS[resolve_bank(name)](base_currency)
