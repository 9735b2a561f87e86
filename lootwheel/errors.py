class LootwheelError(Exception):
    """Base class for every error raised by the reward engine."""


class ValidationError(LootwheelError):
    """Bad percentage or amount input, rejected before anything is persisted."""


class NotFoundError(LootwheelError):
    pass


class EmptyCatalogError(LootwheelError):
    """Selector was asked to draw from a catalog with nothing to award."""


class InventoryRaceError(LootwheelError):
    """A concurrent draw already took the NFT this draw selected."""

    def __init__(self, mint_identity, message=None):
        self.mint_identity = mint_identity
        super().__init__(message or f"NFT {mint_identity} was already won by a concurrent spin.")
