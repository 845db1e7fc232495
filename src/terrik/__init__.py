"""terrik - A declarative provisioning engine: parse, diff, and reconcile resource graphs."""

from . import providers as providers
from .config import EngineConfig as EngineConfig
from .context import ProviderContext as ProviderContext
from .diff import Action as Action
from .diff import Plan as Plan
from .diff import PlanAction as PlanAction
from .diff import diff as diff
from .engine import Engine as Engine
from .errors import CycleError as CycleError
from .errors import LockHeldError as LockHeldError
from .errors import ParseError as ParseError
from .errors import PermanentError as PermanentError
from .errors import PlanError as PlanError
from .errors import SchemaError as SchemaError
from .errors import StateError as StateError
from .errors import TerrikError as TerrikError
from .errors import TransientError as TransientError
from .executor import ExecutionReport as ExecutionReport
from .executor import Executor as Executor
from .graph import Graph as Graph
from .graph import ResourceNode as ResourceNode
from .provider import Provider as Provider
from .provider import ProviderRegistry as ProviderRegistry
from .provider import ReplaceStrategy as ReplaceStrategy
from .provider import provider as provider
from .retry import RetryPolicy as RetryPolicy
from .state import StateRecord as StateRecord
from .state import StateStore as StateStore
from .workspace import Workspace as Workspace
