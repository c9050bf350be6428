#!/usr/bin/env python
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0
#
# tar-pipe - Optimized transfer of file system entries over TCP
# Copyright (C) 2025 tar-pipe contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import os
import json
import logging
import platform
import threading

# Error reporting is disabled unless a SENTRY_DSN is configured explicitly,
# either in the environment or in the .secret file.
import sentry_sdk

from pathlib import Path

from signalslot import Signal

from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations import atexit as sentryAtexit

PUBLIC_VERSION = '1.2.0'

APP_NAME = 'tarpipe'

# Map string levels to logging constants for standard level names
LOG_LEVEL_MAPPING = {'DEBUG': logging.DEBUG, 'INFO': logging.INFO, 'WARNING': logging.WARNING, 'ERROR': logging.ERROR}


def configureGlobalLogLevel(logLevel):
    """
    Configure the global logging level for the application.
    This affects all loggers created via getLogger().

    Args:
        logLevel: Logging level (logging.DEBUG, logging.INFO, etc.)
    """
    rootLogger = logging.getLogger()
    rootLogger.setLevel(logLevel)

    formatter = logging.Formatter('%(asctime)s [%(levelname)s] %(name)s: %(message)s')

    # Add console handler if none exists
    if not rootLogger.handlers:
        consoleHandler = logging.StreamHandler()
        consoleHandler.setLevel(logLevel)
        consoleHandler.setFormatter(formatter)
        rootLogger.addHandler(consoleHandler)
    else:
        for handler in rootLogger.handlers:
            if isinstance(handler, logging.StreamHandler):
                handler.setLevel(logLevel)
                handler.setFormatter(formatter)


if os.getenv('TARPIPE_LOGGING_LEVEL'):
    logLevel = LOG_LEVEL_MAPPING.get(os.getenv('TARPIPE_LOGGING_LEVEL').upper())
    if logLevel is not None:
        configureGlobalLogLevel(logLevel)


def getLogger(name, version=PUBLIC_VERSION, reinitialize=False):
    """
    Get a logger, initializing Sentry once when a DSN is available.
    SENTRY_DSN is looked up through SecretGetter and cached there.

    Args:
        name: Logger name
        version: Version string attached to every record as 'version'
        reinitialize: If True, initialize Sentry again even if it is already active
    """
    try:
        if reinitialize or not sentry_sdk.get_client().is_active():
            sentryDsn = SecretGetter.getInstance().get('SENTRY_DSN')

            if sentryDsn:
                # Suppress "sentry is attempting to send pending events..." on exit
                sentryAtexit.default_callback = lambda pending, timeout: None

                sentry_sdk.init(
                    dsn=sentryDsn,
                    release=version,
                    default_integrations=False,
                    integrations=[
                        LoggingIntegration(),
                        sentryAtexit.AtexitIntegration(),
                    ],
                )
                logging.getLogger(name).debug('Sentry initialized')

        return logging.LoggerAdapter(logging.getLogger(name), {'version': version or 'unknown'})

    except Exception as e:
        fallbackLogger = logging.getLogger(name)

        # If Sentry setup fails, keep going with standard logging
        fallbackLogger.warning(f"Failed to initialize Sentry: {e}")

        return fallbackLogger


def classForName(qualifiedName):
    """
    Get a class or module by its fully qualified name.
    """
    if not isinstance(qualifiedName, str):
        qualifiedName = str(qualifiedName)

    if '.' not in qualifiedName:
        return __import__(qualifiedName)

    parts = qualifiedName.split('.')
    moduleName = ".".join(parts[:-1])
    module = __import__(moduleName, fromlist=[parts[-1]])

    try:
        return getattr(module, parts[-1])
    except AttributeError:
        raise ImportError(f"Unable to import '{qualifiedName}'.")


class Singleton:
    """
    Thread-safe singleton base class.
    Subclasses override initialize() instead of __init__; it runs once per class.
    """

    _instances = {}
    _lock = threading.Lock()

    def __new__(cls, *args, **kwargs):
        if cls not in cls._instances:
            with cls._lock:
                if cls not in cls._instances:
                    cls._instances[cls] = super().__new__(cls)
        return cls._instances[cls]

    def __init__(self, *args, **kwargs):
        if not hasattr(self, '_initialized'):
            self.initialize(*args, **kwargs)
            self._initialized = True

    def initialize(self, *args, **kwargs):
        pass

    @classmethod
    def getInstance(cls):
        if cls not in cls._instances:
            cls()
        return cls._instances[cls]


class EventService(Singleton):
    """
    Dispatches named events to subscribed observers.
    Each event is backed by one 'signalslot' Signal; observers must accept **kwargs.
    """

    def initialize(self):
        self.signals = {}

    def isRegistered(self, event):
        return event in self.signals

    def register(self, event):
        if self.isRegistered(event):
            return False
        self.signals[event] = Signal(name=event)
        return True

    def unregister(self, event):
        return self.signals.pop(event, None) is not None

    def trigger(self, event, **kwargs):
        """
        Call every observer of the event with the given keyword arguments.
        Unregistered events are ignored.
        """
        signal = self.signals.get(event)
        if signal is None:
            return
        signal.emit(**kwargs)

    def subscribe(self, event, observer):
        if not self.isRegistered(event):
            raise KeyError(f"You must register event '{event}' first.")

        signal = self.signals[event]
        if not signal.is_connected(observer):
            signal.connect(observer)

    def unsubscribe(self, event, observer):
        signal = self.signals.get(event)
        if signal is not None and signal.is_connected(observer):
            signal.disconnect(observer)


class Event:
    """ Simple Event wrapper"""

    def __init__(self, key):
        self.key = key

        self.eventService = EventService.getInstance()

    def register(self):
        return self.eventService.register(self.key)

    def subscribe(self, observer):
        return self.eventService.subscribe(self.key, observer)

    def unsubscribe(self, observer):
        return self.eventService.unsubscribe(self.key, observer)

    def trigger(self, **kwargs):
        return self.eventService.trigger(self.key, **kwargs)


class StorageLocator(Singleton):
    """
    Resolves where configuration files (.env, .secret) live.

    Search order: TARPIPE_STORAGE_LOCATION (if it is an existing directory),
    the current directory, ~/.tarpipe, then the platform config directory.
    """

    def initialize(self, appName=APP_NAME):
        self.appName = appName
        self._homeDir = os.path.expanduser(f'~{os.path.sep}.{appName}')
        self._platformDir = self._getPlatformDir()

    def _getPlatformDir(self):
        system = platform.system()

        if system == 'Windows':
            appdata = os.getenv('APPDATA', os.path.expanduser('~'))
            return os.path.join(appdata, self.appName)
        elif system == 'Darwin':
            return os.path.expanduser(f'~/Library/Application Support/{self.appName}')
        else:
            return os.path.expanduser(f'~/.config/{self.appName}')

    def _getEnvStorageLocation(self):
        envStorageLocation = os.getenv('TARPIPE_STORAGE_LOCATION')
        if envStorageLocation and os.path.isdir(envStorageLocation):
            return envStorageLocation
        return None

    def findStorage(self, filename):
        """
        Find a file in the known locations.

        Returns:
            Path to the first existing match, otherwise the path it would have in the
            override location (when set) or in the home directory.
        """
        envStorageLocation = self._getEnvStorageLocation()

        candidates = [
            os.path.abspath(filename),
            os.path.join(self._homeDir, filename),
            os.path.join(self._platformDir, filename),
        ]
        if envStorageLocation:
            candidates.insert(0, os.path.join(envStorageLocation, filename))

        for path in candidates:
            if os.path.exists(path):
                return path

        if envStorageLocation:
            return os.path.join(envStorageLocation, filename)

        return os.path.join(self._homeDir, filename)

    def findConfig(self, filename):
        return self.findStorage(filename)


class SecretGetter(Singleton):
    """
    Manages secrets with caching mechanism.
    Searches for secrets in environment variables first, then in .secret file using StorageLocator.
    """

    DEFAULT_SECRET_FILE = '.secret'

    def initialize(self, secretFileName=DEFAULT_SECRET_FILE):
        self.secretFileName = secretFileName
        self._cache = {}
        self._secretData = None

    def getPath(self):
        return StorageLocator.getInstance().findStorage(self.secretFileName)

    def _loadSecretFile(self):
        logger = logging.getLogger(__name__)

        if self._secretData is not None:
            return

        secretPath = self.getPath()

        if not os.path.exists(secretPath):
            self._secretData = {}
            return

        try:
            self._secretData = json.loads(Path(secretPath).read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Failed to load secret file {secretPath}: {e}")
            self._secretData = {}
            return

        logger.info(f"Loaded secret file {secretPath}")

    def get(self, key: str):
        """
        Get secret value by key with caching.

        Args:
            key: Secret key to retrieve

        Returns:
            str or None: Secret value if found, None otherwise
        """
        if self._cache.get(key):
            return self._cache[key]

        value = os.getenv(key)
        if value:
            self._cache[key] = value
            return value

        self._loadSecretFile()

        value = self._secretData.get(key)
        if value:
            self._cache[key] = value

        return value

    def clear(self):
        """Forget cached values so the environment and file are read again."""
        self._cache = {}
        self._secretData = None


# Event pattern: RESTful + /[action] (create, update, get, delete, others...)
class TarPipeEvent:
    entryArchived = Event('/archive/entry/create')
    entryExtracted = Event('/archive/entry/extract')
    entrySkipped = Event('/archive/entry/skip')

    @classmethod
    def registerAll(cls):
        for event in (cls.entryArchived, cls.entryExtracted, cls.entrySkipped):
            event.register()


TarPipeEvent.registerAll()
