from coupon_actions.services.session_store import SessionStore, get_session_store
from coupon_actions.services.solana import LedgerClient, SolanaClient
from coupon_actions.services.telegram import Messenger, get_messenger


def get_ledger() -> LedgerClient:
    return SolanaClient()


def get_redemption_store() -> SessionStore:
    return get_session_store()


def get_chat_messenger() -> Messenger | None:
    return get_messenger()
