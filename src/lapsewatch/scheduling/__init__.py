from lapsewatch.scheduling.clock import Clock, FixedClock, SystemClock
from lapsewatch.scheduling.locks import KeyedLock
from lapsewatch.scheduling.scheduler import AnalysisScheduler
from lapsewatch.scheduling.single_flight import SingleFlight

__all__ = ["AnalysisScheduler", "Clock", "FixedClock", "KeyedLock", "SingleFlight", "SystemClock"]
