# streamlit run study_of_phytoremediation_model/app.py
from study_of_phytoremediation_model import main

main()
