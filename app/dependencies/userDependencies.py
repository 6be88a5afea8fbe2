from typing import Annotated, Optional
from fastapi import Depends
from app.modules.auth.dependencies import get_current_user, get_optional_user
from app.modules.auth.models import User

user_dependency = Annotated[User, Depends(get_current_user)]
optional_user_dependency = Annotated[Optional[User], Depends(get_optional_user)]
