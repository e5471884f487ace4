# Central configuration for the shift GPS reconciler
# ==================================================
# Constants for trip/stop segmentation, geofence matching, location
# suggestions and mileage. Adjust here to tune the engine's behaviour.

# ==========================================
# TRIP SEGMENTATION
# ==========================================

# Fixes with a horizontal accuracy worse than this are dropped (meters)
MAX_ACCURACY_M = 200

# Fixes worse than this count as low-accuracy inside a trip (meters)
LOW_ACCURACY_M = 50

# Implied speeds above this are GPS glitches (km/h)
MAX_SPEED_KMH = 200

# Interval speed that opens or extends a trip (km/h)
VEHICLE_SPEED_KMH = 15

# Below this an interval is stationary; between the two it is transitional (km/h)
STATIONARY_SPEED_KMH = 5

# Time at stationary speed that closes an open trip (minutes)
STATIONARY_GAP_MINUTES = 3

# Silence between two fixes that terminates an open trip (minutes)
GPS_GAP_MINUTES = 15

# Straight-line to road distance multiplier
DISTANCE_CORRECTION_FACTOR = 1.3

# Corrected distance below this is not a trip (km)
MIN_TRIP_DISTANCE_KM = 0.5

# Fewest contributing points for a trip
MIN_TRIP_POINTS = 2

# ==========================================
# TRANSPORT MODE
# ==========================================

# Average trip speed above this is always driving (km/h)
DRIVING_AVG_SPEED_KMH = 10

# Average trip speed below this is always walking (km/h)
WALKING_AVG_SPEED_KMH = 4

# Inside the grey zone, average speed used when segments are too few (km/h)
GREY_ZONE_SPLIT_KMH = 6

# Segment speed counted as "slow" for the walking ratio (km/h)
SLOW_SEGMENT_KMH = 5

# Share of slow segments that marks a short trip as walking
SLOW_SEGMENT_RATIO = 0.8

# Only trips shorter than this can be reclassified as walking (km)
WALKING_MAX_DISTANCE_KM = 1.0

# ==========================================
# GHOST TRIP FILTER
# ==========================================

# Drop trips that are GPS drift rather than movement
GHOST_TRIP_FILTER = True

# Net displacement required for a walking trip (km)
MIN_DISPLACEMENT_WALKING_KM = 0.1

# Net displacement required for a driving trip (km)
MIN_DISPLACEMENT_DRIVING_KM = 0.05

# Short trips need at least this displacement/distance ratio
MIN_DISPLACEMENT_RATIO = 0.10

# A trip with at most this many points is "short" for the ratio check
SHORT_TRIP_MAX_POINTS = 10

# ==========================================
# STATIONARY CLUSTERS
# ==========================================

# Shortest stop that becomes a cluster (minutes)
MIN_STOP_MINUTES = 3

# Silence inside a stop tolerated before it counts as missing data (seconds)
STOP_GAP_GRACE_SECONDS = 300

# Largest drift across a signal gap that still continues the same stop (meters)
STOP_MAX_GAP_DRIFT_M = 50

# Accuracy assumed for fixes that do not report one (meters)
DEFAULT_ACCURACY_M = 20

# Floor applied to accuracy before weighting a centroid (meters)
MIN_WEIGHT_ACCURACY_M = 0.1

# ==========================================
# LOCATIONS / GEOFENCES
# ==========================================

LOCATION_TYPES = ('office', 'building', 'vendor', 'home', 'gaz', 'cafe_restaurant', 'other')

# Geofence radius bounds (meters)
MIN_RADIUS_M = 10
MAX_RADIUS_M = 1000

# Radius used when an import row has none (meters)
DEFAULT_RADIUS_M = 100

# ==========================================
# SUGGESTED LOCATIONS
# ==========================================

# Neighbourhood radius for the density clustering (meters)
SUGGESTION_EPS_M = 30

# Trailing window of endpoints and clock events considered (days)
SUGGESTION_WINDOW_DAYS = 90

# Clock events with worse accuracy are not suggestion material (meters)
SUGGESTION_MAX_CLOCK_ACCURACY_M = 50

# A dismissed cluster suppresses new clusters this close to it (meters)
IGNORED_CLUSTER_RADIUS_M = 150

# Default minimum occurrences for a suggestion
MIN_SUGGESTION_OCCURRENCES = 2

# Address samples kept per suggestion
SUGGESTION_ADDRESS_SAMPLES = 3

# Max distance from a clicked point to a cluster centroid in the drill-down (meters)
OCCURRENCE_RADIUS_M = 35

# ==========================================
# CARPOOLS
# ==========================================

# Start and end of two trips must be closer than this to pair them (km)
CARPOOL_MAX_ENDPOINT_KM = 0.2

# Time overlap relative to the shorter trip required to pair them
CARPOOL_MIN_OVERLAP_RATIO = 0.8

# ==========================================
# GEOCODING
# ==========================================

# Decimal places kept before reverse geocoding (4 ~ 11 m)
COORDINATE_PRECISION = 4

# Timeout for reverse geocoding calls (seconds)
GEOCODING_TIMEOUT = 5

# Pause between Nominatim requests in the backfill (seconds)
GEOCODING_DELAY = 1.5

# Rows handled per backfill run
BACKFILL_LIMIT = 500

# ==========================================
# BATCH PROCESSING
# ==========================================

# Rows per executemany() call when writing derived rows
BATCH_SIZE = 50
