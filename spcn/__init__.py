# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.

__license__ = 'GNU General Public License v3.0'
__version__ = '0.1.0'

# Import logging functions required for other submodules
from spcn.util import getLoggingLevel, log, setLoggingLevel

from spcn import errors
from spcn import norm
from spcn.norm import StainNormalizer, ImageSource, autoselect
