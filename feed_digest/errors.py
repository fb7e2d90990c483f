##########################################################################################
#
# Script name: errors.py
#
# Description: Exception taxonomy shared by the digest pipeline.
#
##########################################################################################


# ****************************************************************************************
# Exceptions
# ****************************************************************************************


class FeedDigestError(Exception):
    '''
    Base class for exceptions in this package.
    '''


class ConfigError(FeedDigestError):
    '''
    Unrecoverable configuration problem detected before processing starts.
    '''


class SourceConfigError(ConfigError):
    '''
    The source list is missing, malformed, or empty.
    '''


class FeedFetchError(FeedDigestError):
    def __init__(self, endpoint: str, reason: str):
        self.endpoint = endpoint
        self.message = f'Failed to fetch {endpoint}: {reason}'
        super().__init__(self.message)


class FeedParseError(FeedDigestError):
    pass


class ContentFetchError(FeedDigestError):
    pass


class ResponseDecodeError(FeedDigestError):
    '''
    The summarization service replied with text that holds no usable JSON.
    '''

    def __init__(self, response: str):
        self.response = response
        self.preview = response[:150].replace('\n', ' ')
        super().__init__(f'Could not decode JSON from response: {self.preview!r}')


class DigestError(FeedDigestError):
    pass


class ReportFinalizedError(FeedDigestError):
    pass
