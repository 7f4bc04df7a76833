"""
Bank Integration Module

Connects users to bank aggregators over OAuth and keeps their accounts,
balances and transactions in sync. Ships the TrueLayer provider; more
aggregators plug in through BaseBankProvider.
"""

from .service import BankIntegrationService
from .encryption import CredentialVault
from .reconciler import SyncReconciler, SyncResult

__all__ = ['BankIntegrationService', 'CredentialVault', 'SyncReconciler', 'SyncResult']
