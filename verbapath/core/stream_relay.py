"""Per-node publish/subscribe channel for streamed tokens."""

from datetime import datetime
from typing import Callable, Dict, List, Optional

from ..models.core import StreamEvent, StreamEventType
from .logging import get_logger


logger = get_logger(__name__)

StreamCallback = Callable[[StreamEvent], None]


class StreamHandle:
    """Cancellation handle for one node's active stream."""
    
    def __init__(self, node_id: str):
        self.node_id = node_id
        self._cancelled = False
    
    def cancel(self):
        self._cancelled = True
    
    @property
    def cancelled(self) -> bool:
        return self._cancelled


class StreamRelay:
    """Forwards token events from handlers to subscribers.

    At most one stream is active per node id; starting another one cancels
    the previous handle. One relay belongs to one executor.
    """
    
    def __init__(self):
        self._listeners: Dict[str, List[StreamCallback]] = {}
        self._active: Dict[str, StreamHandle] = {}
    
    def subscribe(self, node_id: str, callback: StreamCallback) -> Callable[[], None]:
        """Register ``callback`` for ``node_id`` and return its unsubscribe function."""
        self._listeners.setdefault(node_id, []).append(callback)
        
        def unsubscribe():
            callbacks = self._listeners.get(node_id, [])
            if callback in callbacks:
                callbacks.remove(callback)
            if not callbacks:
                self._listeners.pop(node_id, None)
        
        return unsubscribe
    
    def emit(self, node_id: str, event: StreamEvent):
        for callback in list(self._listeners.get(node_id, [])):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Stream subscriber for node {node_id} failed: {e}")
    
    def start_stream(self, node_id: str) -> StreamHandle:
        self.cancel_stream(node_id)
        
        handle = StreamHandle(node_id)
        self._active[node_id] = handle
        self.emit(node_id, self._event(StreamEventType.START, node_id))
        return handle
    
    def send_token(self, node_id: str, token: str):
        self.emit(node_id, self._event(StreamEventType.TOKEN, node_id, token))
    
    def complete_stream(self, node_id: str, final_content: str):
        self.emit(node_id, self._event(StreamEventType.COMPLETE, node_id, final_content))
        self._active.pop(node_id, None)
    
    def fail_stream(self, node_id: str, message: str):
        self.emit(node_id, self._event(StreamEventType.ERROR, node_id, message))
        self._active.pop(node_id, None)
    
    def cancel_stream(self, node_id: str):
        handle = self._active.pop(node_id, None)
        if handle is not None:
            handle.cancel()
            logger.debug(f"Cancelled stream for node {node_id}")
    
    def cancel_all(self):
        for handle in self._active.values():
            handle.cancel()
        self._active.clear()
    
    def is_streaming(self, node_id: str) -> bool:
        return node_id in self._active
    
    @staticmethod
    def _event(event_type: StreamEventType, node_id: str, content: Optional[str] = None) -> StreamEvent:
        return StreamEvent(type=event_type, node_id=node_id, content=content, timestamp=datetime.utcnow())
