import asyncio, warnings, copy, time, contextvars, contextlib, traceback
from dataclasses import dataclass, field
from typing import Any, Optional, List, Dict
from enum import Enum

class TraceEventType(Enum):
    NODE_START = "node_start"
    NODE_END = "node_end"
    RETRY_ATTEMPT = "retry_attempt"
    RETRY_WAIT = "retry_wait"
    FALLBACK = "fallback"
    TRANSITION = "transition"
    FLOW_START = "flow_start"
    FLOW_END = "flow_end"

@dataclass
class TraceEvent:
    event_type: TraceEventType
    node_name: str
    timestamp: float = field(default_factory=time.time)
    data: Optional[Dict[str, Any]] = None

    def __repr__(self):
        data_str = f", data={self.data}" if self.data else ""
        return f"TraceEvent({self.event_type.value}, node={self.node_name}, t={self.timestamp:.4f}{data_str})"

@dataclass
class NodeError:
    """Sentinel describing a failed execution, for fallbacks that prefer routing over raising.

    The default fallback re-raises. A node that wants to keep the flow alive
    returns ``self.error_result(exc)`` from ``exec_fallback`` and checks the
    result in ``post``:

        def exec_fallback(self, prep_res, exc):
            return self.error_result(exc)

        def post(self, shared, prep_res, exec_res):
            if self.is_error(exec_res):
                shared['last_error'] = exec_res
                return "error"
            return "default"
    """
    exception: Exception
    exception_type: str
    message: str
    node_name: str
    retry_count: int
    max_retries: int
    traceback_str: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

class FlowTracer:
    """Records what a traversal did: node order, transitions, retries and fallbacks.

    Usage:
        tracer = FlowTracer()
        flow.run(shared, tracer=tracer)
        tracer.get_execution_order()   # ['Decide', 'Search', 'Decide', 'Answer']

    The active tracer lives in a context variable, so nested flows and
    concurrent batch traversals all record into the tracer handed to the
    outermost run.
    """
    def __init__(self):
        self.events: List[TraceEvent] = []

    def record(self, event_type: TraceEventType, node_name: str, data: Optional[Dict[str, Any]] = None):
        self.events.append(TraceEvent(event_type, node_name, time.time(), data or None))

    def _of_type(self, event_type: TraceEventType) -> List[TraceEvent]:
        return [e for e in self.events if e.event_type == event_type]

    def get_execution_order(self) -> List[str]:
        """Names of the nodes run by orchestrators, in start order."""
        return [e.node_name for e in self._of_type(TraceEventType.NODE_START)]

    def get_transitions(self) -> List[Dict[str, str]]:
        return [{"from": e.data["from_node"], "to": e.data["to_node"], "action": e.data["action"]}
                for e in self._of_type(TraceEventType.TRANSITION)]

    def get_retries(self) -> List[Dict[str, Any]]:
        """Retry waits, one per failed attempt that was followed by another attempt."""
        return [{"node": e.node_name, **e.data} for e in self._of_type(TraceEventType.RETRY_WAIT)]

    def get_fallbacks(self) -> List[Dict[str, Any]]:
        return [{"node": e.node_name, **e.data} for e in self._of_type(TraceEventType.FALLBACK)]

    def get_duration(self) -> float:
        if not self.events: return 0.0
        return self.events[-1].timestamp - self.events[0].timestamp

    def to_dict(self) -> Dict[str, Any]:
        """Export trace as a dictionary for serialization."""
        return {
            "duration": self.get_duration(),
            "execution_order": self.get_execution_order(),
            "transitions": self.get_transitions(),
            "retries": self.get_retries(),
            "fallbacks": self.get_fallbacks(),
            "events": [{"type": e.event_type.value, "node": e.node_name, "timestamp": e.timestamp, "data": e.data}
                       for e in self.events],
        }

    def clear(self):
        self.events.clear()

_current_tracer: contextvars.ContextVar[Optional[FlowTracer]] = contextvars.ContextVar('_current_tracer', default=None)

@contextlib.contextmanager
def _use_tracer(tracer):
    # An explicit tracer wins; otherwise keep whatever an enclosing run installed.
    token = _current_tracer.set(tracer) if tracer is not None else None
    try: yield
    finally:
        if token is not None: _current_tracer.reset(token)

def _get_node_name(node) -> str:
    return getattr(node, 'name', None) or node.__class__.__name__

def _trace(event_type, node, data=None):
    tracer = _current_tracer.get()
    if tracer is not None: tracer.record(event_type, _get_node_name(node), data)

async def _gather_all(aws):
    """Await all concurrently, results in input order. The first error cancels the rest and propagates."""
    tasks = [asyncio.ensure_future(a) for a in aws]
    try: return await asyncio.gather(*tasks)
    except BaseException:
        for t in tasks: t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

class BaseNode:
    _trace_events = (TraceEventType.NODE_START, TraceEventType.NODE_END)
    def __init__(self): self.params,self.successors,self.name={},{},None
    def set_params(self,params): self.params=params
    @staticmethod
    def is_error(result): return isinstance(result, NodeError)
    def next(self,node,action="default"):
        if action in self.successors: warnings.warn(f"Overwriting successor for action '{action}'")
        self.successors[action]=node; return node
    connect = next
    def prep(self,shared): pass
    def exec(self,prep_res): pass
    def post(self,shared,prep_res,exec_res): return "default"
    def _exec(self,prep_res): return self.exec(prep_res)
    def _run(self,shared): p=self.prep(shared); e=self._exec(p); return self.post(shared,p,e)
    # Synchronous nodes satisfy the suspendable contract by never suspending.
    async def _run_async(self,shared): return self._run(shared)
    def run(self,shared,tracer=None):
        if self.successors: warnings.warn("Node won't run successors. Use Flow.")
        with _use_tracer(tracer):
            _trace(self._trace_events[0], self); action = self._run(shared); _trace(self._trace_events[1], self)
            return action
    async def run_async(self,shared,tracer=None):
        if self.successors: warnings.warn("Node won't run successors. Use AsyncFlow.")
        with _use_tracer(tracer):
            _trace(self._trace_events[0], self); action = await self._run_async(shared); _trace(self._trace_events[1], self)
            return action
    def __rshift__(self,other): return self.next(other)
    def __sub__(self,action):
        if isinstance(action,str): return _ConditionalTransition(self,action)
        raise TypeError("Action must be a string")

class _ConditionalTransition:
    def __init__(self,src,action): self.src,self.action=src,action
    def __rshift__(self,tgt): return self.src.next(tgt,self.action)

class Node(BaseNode):
    """A node whose exec is retried up to ``max_retries`` times before ``exec_fallback`` decides.

    ``wait`` seconds pass between attempts (doubling per attempt with
    ``exponential_backoff``, capped by ``max_wait``). Here the wait blocks the
    calling thread with ``time.sleep``; prefer ``AsyncNode`` when the wait is
    nonzero.
    """
    def __init__(self,max_retries=1,wait=0,exponential_backoff=False,max_wait=None):
        super().__init__()
        if max_retries<1: raise ValueError("max_retries must be at least 1")
        if wait<0: raise ValueError("wait must be non-negative")
        self.max_retries,self.wait,self.exponential_backoff,self.max_wait=max_retries,wait,exponential_backoff,max_wait
        self.cur_retry=0
    def exec_fallback(self,prep_res,exc): raise exc
    def error_result(self,exc):
        tb="".join(traceback.format_exception(type(exc),exc,exc.__traceback__))
        return NodeError(exception=exc,exception_type=type(exc).__name__,message=str(exc),node_name=_get_node_name(self),retry_count=self.cur_retry+1,max_retries=self.max_retries,traceback_str=tb)
    def _get_wait_time(self,retry_count):
        if self.wait<=0: return 0
        w=self.wait*(2**retry_count) if self.exponential_backoff else self.wait
        return min(w,self.max_wait) if self.max_wait is not None else w
    def _exec(self,prep_res):
        for i in range(self.max_retries):
            self.cur_retry=i
            if self.max_retries>1: _trace(TraceEventType.RETRY_ATTEMPT, self, {"retry": i+1, "max_retries": self.max_retries})
            try: return self.exec(prep_res)
            except Exception as e:
                if i==self.max_retries-1:
                    _trace(TraceEventType.FALLBACK, self, {"error": str(e)})
                    return self.exec_fallback(prep_res,e)
                w=self._get_wait_time(i)
                _trace(TraceEventType.RETRY_WAIT, self, {"retry": i+1, "wait_time": w, "error": str(e)})
                if w>0: time.sleep(w)

class BatchNode(Node):
    def _exec(self,items): return [super(BatchNode,self)._exec(i) for i in (items or [])]

class Flow(BaseNode):
    """Walks the node graph from ``start_node`` until a node's action has no successor.

    Every step runs a shallow copy of the node: the copy shares the successor
    table but gets its own params and retry counter, so revisiting a node in a
    loop or reusing it in another traversal never sees stale state.
    """
    _trace_events = (TraceEventType.FLOW_START, TraceEventType.FLOW_END)
    def __init__(self,start=None): super().__init__(); self.start_node=start
    def start(self,start): self.start_node=start; return start
    def get_next_node(self,curr,action):
        nxt=curr.successors.get(action or "default")
        if nxt is None and curr.successors: warnings.warn(f"Flow ends: '{action}' not found in {list(curr.successors)}")
        return nxt
    def _enter(self,params):
        return copy.copy(self.start_node),(params if params is not None else {**self.params})
    def _advance(self,curr,action):
        nxt=self.get_next_node(curr,action)
        if nxt is not None: _trace(TraceEventType.TRANSITION, self, {"from_node": _get_node_name(curr), "to_node": _get_node_name(nxt), "action": action})
        return copy.copy(nxt)
    def _orch(self,shared,params=None):
        curr,p=self._enter(params); last_action="default"
        while curr is not None:
            curr.set_params({**p})
            _trace(TraceEventType.NODE_START, curr)
            last_action=curr._run(shared) or "default"
            _trace(TraceEventType.NODE_END, curr)
            curr=self._advance(curr,last_action)
        return last_action
    def _run(self,shared): p=self.prep(shared); o=self._orch(shared); return self.post(shared,p,o)
    def post(self,shared,prep_res,exec_res): return exec_res

class BatchFlow(Flow):
    """Runs the whole subgraph once per param dict returned by ``prep``, in order.

    All traversals write to the same ``shared``; give each batch item its own
    keys (e.g. ``shared['translations'][lang]``).
    """
    def _run(self,shared):
        pr=self.prep(shared) or []
        for bp in pr: self._orch(shared,{**self.params,**bp})
        return self.post(shared,pr,None)

class AsyncNode(Node):
    async def prep_async(self,shared): pass
    async def exec_async(self,prep_res): pass
    async def exec_fallback_async(self,prep_res,exc): raise exc
    async def post_async(self,shared,prep_res,exec_res): return "default"
    async def _exec(self,prep_res):
        for i in range(self.max_retries):
            self.cur_retry=i
            if self.max_retries>1: _trace(TraceEventType.RETRY_ATTEMPT, self, {"retry": i+1, "max_retries": self.max_retries})
            try: return await self.exec_async(prep_res)
            except Exception as e:
                if i==self.max_retries-1:
                    _trace(TraceEventType.FALLBACK, self, {"error": str(e)})
                    return await self.exec_fallback_async(prep_res,e)
                w=self._get_wait_time(i)
                _trace(TraceEventType.RETRY_WAIT, self, {"retry": i+1, "wait_time": w, "error": str(e)})
                if w>0: await asyncio.sleep(w)
    async def _run_async(self,shared):
        p=await self.prep_async(shared); e=await self._exec(p); return await self.post_async(shared,p,e)
    def _run(self,shared): raise RuntimeError("Use run_async.")

class AsyncBatchNode(AsyncNode,BatchNode):
    async def _exec(self,items): return [await super(AsyncBatchNode,self)._exec(i) for i in (items or [])]

class AsyncParallelBatchNode(AsyncNode,BatchNode):
    """Executes every item concurrently; results keep the input order.

    Each item retries on its own shallow copy of the node. A failing item
    resolves through its fallback without touching its siblings; if a fallback
    raises, the remaining items are cancelled and the error propagates.
    """
    async def _exec(self,items):
        return await _gather_all(super(AsyncParallelBatchNode,copy.copy(self))._exec(i) for i in (items or []))

class AsyncFlow(Flow,AsyncNode):
    async def _orch_async(self,shared,params=None):
        curr,p=self._enter(params); last_action="default"
        while curr is not None:
            curr.set_params({**p})
            _trace(TraceEventType.NODE_START, curr)
            last_action=await curr._run_async(shared) or "default"
            _trace(TraceEventType.NODE_END, curr)
            curr=self._advance(curr,last_action)
        return last_action
    async def _run_async(self,shared): p=await self.prep_async(shared); o=await self._orch_async(shared); return await self.post_async(shared,p,o)
    def _run(self,shared): raise RuntimeError("Use run_async.")
    async def post_async(self,shared,prep_res,exec_res): return exec_res

class AsyncBatchFlow(AsyncFlow,BatchFlow):
    async def _run_async(self,shared):
        pr=await self.prep_async(shared) or []
        for bp in pr: await self._orch_async(shared,{**self.params,**bp})
        return await self.post_async(shared,pr,None)

class AsyncParallelBatchFlow(AsyncFlow,BatchFlow):
    """Runs one traversal per param dict concurrently and joins them before ``post_async``.

    Traversals share ``shared`` without locking: concurrent writes to the same
    key race, so each traversal should write disjoint keys. The first fatal
    error cancels the remaining traversals and propagates.
    """
    async def _run_async(self,shared):
        pr=await self.prep_async(shared) or []
        await _gather_all(self._orch_async(shared,{**self.params,**bp}) for bp in pr)
        return await self.post_async(shared,pr,None)
