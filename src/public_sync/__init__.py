"""
Public sync module for attendance delivery to the cloud service
"""

from .sync_manager import SyncDispatcher, DispatchResult

__all__ = ['SyncDispatcher', 'DispatchResult']
